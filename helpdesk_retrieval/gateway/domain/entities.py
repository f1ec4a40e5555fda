"""
Gateway Domain Entities
=======================

Value objects exchanged with generation/embedding backends.

Pure Python, no I/O: every backend adapter converts its own wire format
into these types.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union


@dataclass
class ChatMessage:
    """One chat turn: role is system, user or assistant."""
    role: str
    content: str


@dataclass
class GenerationOptions:
    """
    Per-call generation knobs.

    None means "use the backend default" (temperature 0.7, 1000 tokens).
    """
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    json_mode: bool = False
    operation: str = "generate"  # metrics label


@dataclass
class GenerationResult:
    """Result of a chat completion."""
    text: str
    tokens_in: int
    tokens_out: int
    model: str
    backend_name: str = ""
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out


@dataclass
class EmbeddingResult:
    """Result of an embedding call, already at canonical dimension."""
    vector: List[float]
    tokens_in: int
    model: str
    backend_name: str = ""
    latency_ms: int = 0

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class BackendDescriptor:
    """
    Public description of a registered backend.

    Ranks are 0-based positions in the generation/embedding priority lists;
    None when the backend is not listed for that capability.
    """
    name: str
    supports_generation: bool
    supports_embedding: bool
    is_free: bool
    is_configured: bool
    generation_rank: Optional[int] = None
    embedding_rank: Optional[int] = None
    models: dict = field(default_factory=dict)


MessageLike = Union[ChatMessage, dict]


def as_chat_messages(messages: Sequence[MessageLike]) -> List[ChatMessage]:
    """Accept ChatMessage objects or {"role", "content"} dicts."""
    result = []
    for message in messages:
        if isinstance(message, ChatMessage):
            result.append(message)
        else:
            result.append(ChatMessage(role=message["role"], content=message["content"]))
    return result


def normalize_dimension(vector: Sequence[float], dimension: int) -> List[float]:
    """
    Zero-pad or truncate a vector to the canonical dimension.

    Keeps vectors from backends with different native sizes comparable
    in the same pgvector column.
    """
    values = [float(v) for v in vector]
    if len(values) < dimension:
        return values + [0.0] * (dimension - len(values))
    return values[:dimension]


def estimate_tokens(text: str) -> int:
    """Rough token count for backends that do not report usage."""
    return math.ceil(len(text) / 4)
