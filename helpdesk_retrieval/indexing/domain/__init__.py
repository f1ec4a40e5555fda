"""
Indexing Domain Layer
=====================

Contains:
- Entities: legacy read model, IndexerProgress, IndexingStats, IndexResult
- Chunking: HTML cleanup, record formatting, TextChunker, contextual prefix
- Analytics: resolution and response timings
"""

from helpdesk_retrieval.indexing.domain.entities import (
    LegacyRecord,
    LegacyReply,
    RecordWithReplies,
    ManagerInfo,
    Counterparty,
    CustomerInfo,
    Deal,
    LegacyStats,
    IndexerProgress,
    IndexingStats,
    IndexResult,
)
from helpdesk_retrieval.indexing.domain.chunking import (
    TextChunker,
    clean_html,
    format_record_with_replies,
    build_contextual_prefix,
    MIN_TEXT_LENGTH,
)
from helpdesk_retrieval.indexing.domain.analytics import extract_analytics

__all__ = [
    # Legacy read model
    "LegacyRecord",
    "LegacyReply",
    "RecordWithReplies",
    "ManagerInfo",
    "Counterparty",
    "CustomerInfo",
    "Deal",
    "LegacyStats",
    # Pipeline state
    "IndexerProgress",
    "IndexingStats",
    "IndexResult",
    # Chunking
    "TextChunker",
    "clean_html",
    "format_record_with_replies",
    "build_contextual_prefix",
    "MIN_TEXT_LENGTH",
    # Analytics
    "extract_analytics",
]
