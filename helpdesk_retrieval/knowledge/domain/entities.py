"""
Knowledge Domain Entities
=========================

Domain entities for the knowledge store.

Contains pure Python objects for indexed chunks and search results.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID


@dataclass
class KnowledgeChunk:
    """
    A searchable piece of text with its embedding.

    Each chunk belongs to a source (source_type, source_id); a source may
    have many chunks. The embedding is always at the canonical dimension.
    """
    id: Optional[UUID]  # None until persisted
    content: str
    source_type: str
    source_id: Optional[str] = None
    workspace_id: Optional[UUID] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None


@dataclass
class SimilarChunk:
    """
    One search hit.

    ``similarity`` already includes the lexical boost when hybrid search
    ran; ``rerank_score`` is set only when reranking was applied.
    """
    id: str
    content: str
    source_type: str
    source_id: Optional[str]
    metadata: Dict[str, Any]
    similarity: float
    text_rank: float = 0.0
    rerank_score: Optional[float] = None

    @property
    def score(self) -> float:
        """Ranking key: rerank score when present, else similarity."""
        return self.rerank_score if self.rerank_score is not None else self.similarity


@dataclass
class SearchFilters:
    """Scope of a search. None means unrestricted."""
    workspace_id: Optional[UUID] = None
    source_type: Optional[str] = None


@dataclass
class KnowledgeStats:
    """Chunk counts, total and per source type."""
    total_chunks: int
    by_source_type: Dict[str, int] = field(default_factory=dict)


@dataclass
class AIUsageRecord:
    """One billable backend call made on behalf of the knowledge store."""
    backend: str
    model: str
    operation: str  # embed | search
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    success: bool = True
    error: Optional[str] = None
    workspace_id: Optional[UUID] = None
    user_id: Optional[str] = None
