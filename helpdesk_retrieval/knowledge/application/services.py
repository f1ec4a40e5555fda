"""
Knowledge Application Services
==============================

KnowledgeStoreService: persists text chunks with embeddings and answers
hybrid (vector + lexical) similarity queries.

Query embeddings go through a short-lived cache so repeated searches do
not hit the gateway (or the usage log) again.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import UUID

from helpdesk_retrieval.config import settings, UsageOperation, VALID_SOURCE_TYPES
from helpdesk_retrieval.core import HybridSearchUnavailableException, ValidationException
from helpdesk_retrieval.gateway.application import ProviderGateway
from helpdesk_retrieval.gateway.domain import EmbeddingResult
from helpdesk_retrieval.knowledge.domain import (
    AIUsageRecord,
    EmbeddingCache,
    KnowledgeChunk,
    KnowledgeStats,
    SearchFilters,
    SimilarChunk,
    rerank_results,
)
from helpdesk_retrieval.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

MIN_CANDIDATES = 20
OVERFETCH_FACTOR = 3


# ========== Repository Interfaces (Dependency Inversion) ==========

class IChunkRepository(ABC):
    """Interface for knowledge chunk storage and search."""

    @abstractmethod
    async def add(self, chunk: KnowledgeChunk) -> KnowledgeChunk:
        """Persist a chunk and return it with its id."""

    @abstractmethod
    async def delete_by_source(self, source_type: str, source_id: str) -> int:
        """Delete every chunk of a source; returns the count removed."""

    @abstractmethod
    async def search_hybrid(
        self,
        embedding: List[float],
        query_text: str,
        filters: SearchFilters,
        limit: int,
        min_similarity: float
    ) -> List[SimilarChunk]:
        """
        Vector + lexical search.

        Raises:
            HybridSearchUnavailableException: Hybrid function not installed
        """

    @abstractmethod
    async def search_vector(
        self,
        embedding: List[float],
        filters: SearchFilters,
        limit: int,
        min_similarity: float
    ) -> List[SimilarChunk]:
        """Pure cosine similarity search."""

    @abstractmethod
    async def get_indexed_source_ids(self, source_type: str, candidate_ids: List[str]) -> Set[str]:
        """Return the subset of candidate ids that already have chunks."""

    @abstractmethod
    async def get_stats(self, workspace_id: Optional[UUID] = None) -> KnowledgeStats:
        """Count chunks, total and per source type."""


class IUsageLogRepository(ABC):
    """Interface for the AI usage log."""

    @abstractmethod
    async def log(self, record: AIUsageRecord) -> None:
        """Append one usage record."""


# ========== Application Services ==========

class KnowledgeStoreService:
    """
    Knowledge base over pgvector with hybrid search.

    Owns its embedding cache; one instance is shared by the application.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        chunk_repository: IChunkRepository,
        usage_repository: Optional[IUsageLogRepository] = None,
        cache: Optional[EmbeddingCache] = None,
        rerank_enabled: Optional[bool] = None
    ):
        self._gateway = gateway
        self._chunks = chunk_repository
        self._usage = usage_repository
        self._cache = cache or EmbeddingCache(
            ttl_seconds=settings.knowledge_cache_ttl_seconds,
            max_size=settings.knowledge_cache_max_size
        )
        self._rerank_enabled = (
            settings.knowledge_rerank_enabled if rerank_enabled is None else rerank_enabled
        )

    def is_available(self) -> bool:
        """True when an embedding backend is usable."""
        return self._gateway.is_embedding_available()

    async def add_chunk(
        self,
        content: str,
        source_type: str,
        source_id: Optional[str] = None,
        workspace_id: Optional[UUID] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> KnowledgeChunk:
        """
        Embed and persist one chunk.

        Raises:
            ValidationException: Unknown source type or empty content
            ServiceNotConfiguredException: No embedding backend is usable
            AllBackendsFailedException: Every embedding backend failed
        """
        if source_type not in VALID_SOURCE_TYPES:
            raise ValidationException(
                f"Unknown source type '{source_type}'",
                {"allowed": list(VALID_SOURCE_TYPES)}
            )
        if not content or not content.strip():
            raise ValidationException("Chunk content is empty")

        result = await self._gateway.embed(content)
        chunk = await self._chunks.add(KnowledgeChunk(
            id=None,
            content=content,
            source_type=source_type,
            source_id=source_id,
            workspace_id=workspace_id,
            metadata=dict(metadata or {}),
            embedding=result.vector,
        ))
        await self._log_usage(result, UsageOperation.EMBED, workspace_id)

        logger.debug(
            "Chunk added",
            extra={"chunk_id": str(chunk.id), "source_type": source_type, "source_id": source_id}
        )
        return chunk

    async def remove_chunks_by_source(self, source_type: str, source_id: str) -> int:
        removed = await self._chunks.delete_by_source(source_type, source_id)
        if removed:
            logger.debug(
                "Chunks removed",
                extra={"source_type": source_type, "source_id": source_id, "count": removed}
            )
        return removed

    async def search_similar(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
        user_id: Optional[str] = None,
        rerank: Optional[bool] = None
    ) -> List[SimilarChunk]:
        """
        Find chunks similar to a query.

        Over-fetches candidates, optionally reranks, and returns at most
        ``limit`` results in descending score order. Falls back to pure
        vector search when the hybrid function is missing.
        """
        filters = filters or SearchFilters()
        if limit is None:
            limit = settings.knowledge_search_limit
        if min_similarity is None:
            min_similarity = settings.knowledge_min_similarity
        rerank = self._rerank_enabled if rerank is None else rerank

        start = time.perf_counter()
        embedding = await self._embed_query(query, filters.workspace_id, user_id)
        fetch_limit = max(limit * OVERFETCH_FACTOR, MIN_CANDIDATES)

        try:
            candidates = await self._chunks.search_hybrid(
                embedding, query, filters, fetch_limit, min_similarity
            )
        except HybridSearchUnavailableException as e:
            logger.warning(
                "Hybrid search unavailable, falling back to vector search",
                extra={"error": e.message}
            )
            candidates = await self._chunks.search_vector(
                embedding, filters, fetch_limit, min_similarity
            )

        if rerank:
            results = rerank_results(candidates, query, limit)
        else:
            results = sorted(candidates, key=lambda c: c.similarity, reverse=True)[:limit]

        logger.info(
            "Knowledge search completed",
            extra={
                "candidates": len(candidates),
                "results": len(results),
                "reranked": rerank,
                "latency_ms": int((time.perf_counter() - start) * 1000),
            }
        )
        return results

    async def get_indexed_source_ids(self, source_type: str, candidate_ids: Iterable[str]) -> Set[str]:
        ids = [str(i) for i in candidate_ids]
        if not ids:
            return set()
        return await self._chunks.get_indexed_source_ids(source_type, ids)

    async def get_stats(self, workspace_id: Optional[UUID] = None) -> KnowledgeStats:
        return await self._chunks.get_stats(workspace_id)

    def get_cache_stats(self) -> Dict[str, float]:
        return self._cache.stats()

    async def clear_embedding_cache(self) -> None:
        await self._cache.clear()
        logger.info("Embedding cache cleared")

    # ---------- internals ----------

    async def _embed_query(
        self,
        query: str,
        workspace_id: Optional[UUID],
        user_id: Optional[str]
    ) -> List[float]:
        cached = await self._cache.get(query)
        if cached is not None:
            logger.debug("Embedding cache hit", extra={"backend": cached.backend_name})
            return cached.vector

        result = await self._gateway.embed(query)
        await self._cache.put(query, result)
        await self._log_usage(result, UsageOperation.SEARCH, workspace_id, user_id)
        return result.vector

    async def _log_usage(
        self,
        result: EmbeddingResult,
        operation: str,
        workspace_id: Optional[UUID] = None,
        user_id: Optional[str] = None
    ) -> None:
        if self._usage is None:
            return
        try:
            await self._usage.log(AIUsageRecord(
                backend=result.backend_name,
                model=result.model,
                operation=operation,
                tokens_in=result.tokens_in,
                latency_ms=result.latency_ms,
                workspace_id=workspace_id,
                user_id=user_id,
            ))
        except Exception as e:
            # usage accounting never fails the caller
            logger.warning(
                "Failed to write AI usage log",
                extra={"operation": operation, "error": str(e)}
            )
