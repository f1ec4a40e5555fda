"""
Gateway Domain Layer
====================

Framework-agnostic value objects for the provider gateway.
"""

from helpdesk_retrieval.gateway.domain.entities import (
    ChatMessage,
    GenerationOptions,
    GenerationResult,
    EmbeddingResult,
    BackendDescriptor,
    MessageLike,
    as_chat_messages,
    normalize_dimension,
    estimate_tokens,
)

__all__ = [
    "ChatMessage",
    "GenerationOptions",
    "GenerationResult",
    "EmbeddingResult",
    "BackendDescriptor",
    "MessageLike",
    "as_chat_messages",
    "normalize_dimension",
    "estimate_tokens",
]
