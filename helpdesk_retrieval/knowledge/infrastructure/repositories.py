"""
Knowledge Infrastructure Repositories
=====================================

Concrete implementations of the knowledge repository interfaces using
SQLAlchemy.

The knowledge store is a long-lived service, so repositories receive a
session factory and open one unit of work per call.
"""

import json
from typing import Any, AsyncContextManager, Callable, Iterable, List, Optional, Set
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import bindparam, delete, distinct, func, select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk_retrieval.config import settings
from helpdesk_retrieval.core import HybridSearchUnavailableException, RepositoryException
from helpdesk_retrieval.infrastructure.database import get_session_context
from helpdesk_retrieval.knowledge.application import IChunkRepository, IUsageLogRepository
from helpdesk_retrieval.knowledge.domain import (
    AIUsageRecord,
    KnowledgeChunk,
    KnowledgeStats,
    SearchFilters,
    SimilarChunk,
)
from helpdesk_retrieval.knowledge.infrastructure.sql import (
    HYBRID_SEARCH_FUNCTION,
    VECTOR_SEARCH_FUNCTION,
)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

UNDEFINED_FUNCTION_SQLSTATE = "42883"


def is_missing_function_error(error: Exception, function_name: str) -> bool:
    """True if the driver error says the named SQL function does not exist."""
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == UNDEFINED_FUNCTION_SQLSTATE:
        return True
    message = str(error).lower()
    return function_name in message and "does not exist" in message


def _row_to_similar_chunk(row: Any) -> SimilarChunk:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return SimilarChunk(
        id=str(row["id"]),
        content=row["content"],
        source_type=row["sourceType"],
        source_id=row["sourceId"],
        metadata=metadata or {},
        similarity=float(row["similarity"]),
        text_rank=float(row.get("textRank") or 0.0),
    )


class SQLAlchemyChunkRepository(IChunkRepository):
    """
    SQLAlchemy implementation of the chunk repository.

    Search goes through the server-side functions from sql.py.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        dimension: Optional[int] = None
    ):
        self._session_factory = session_factory
        self._dimension = dimension or settings.embedding_dimension

    async def add(self, chunk: KnowledgeChunk) -> KnowledgeChunk:
        """Insert a chunk; assigns its id."""
        from helpdesk_retrieval.knowledge.infrastructure.models import KnowledgeChunkModel

        chunk.id = chunk.id or uuid4()
        model = KnowledgeChunkModel(
            id=chunk.id,
            workspace_id=chunk.workspace_id,
            source_type=chunk.source_type,
            source_id=chunk.source_id,
            content=chunk.content,
            embedding=chunk.embedding,
            metadata_=chunk.metadata,
            created_at=chunk.created_at,
            updated_at=chunk.created_at,
        )
        try:
            async with self._session_factory() as session:
                session.add(model)
                await session.flush()
        except DBAPIError as e:
            raise RepositoryException(
                "Failed to store knowledge chunk",
                {"source_type": chunk.source_type, "source_id": chunk.source_id, "error": str(e)}
            ) from e
        return chunk

    async def delete_by_source(self, source_type: str, source_id: str) -> int:
        from helpdesk_retrieval.knowledge.infrastructure.models import KnowledgeChunkModel

        stmt = delete(KnowledgeChunkModel).where(
            KnowledgeChunkModel.source_type == source_type,
            KnowledgeChunkModel.source_id == str(source_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
        return result.rowcount or 0

    def _search_params(
        self,
        embedding: List[float],
        filters: SearchFilters,
        limit: int,
        min_similarity: float
    ) -> dict:
        return {
            "embedding": embedding,
            "workspace_id": filters.workspace_id,
            "source_type": filters.source_type,
            "match_limit": limit,
            "min_similarity": min_similarity,
        }

    async def search_hybrid(
        self,
        embedding: List[float],
        query_text: str,
        filters: SearchFilters,
        limit: int,
        min_similarity: float
    ) -> List[SimilarChunk]:
        stmt = text(
            f"SELECT * FROM {HYBRID_SEARCH_FUNCTION}("
            "CAST(:embedding AS vector), :query_text, CAST(:workspace_id AS uuid), "
            "CAST(:source_type AS text), :match_limit, :min_similarity)"
        ).bindparams(bindparam("embedding", type_=Vector(self._dimension)))
        params = self._search_params(embedding, filters, limit, min_similarity)
        params["query_text"] = query_text

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt, params)
                rows = result.mappings().all()
        except DBAPIError as e:
            if is_missing_function_error(e, HYBRID_SEARCH_FUNCTION):
                raise HybridSearchUnavailableException(
                    "Hybrid search function is not installed",
                    {"function": HYBRID_SEARCH_FUNCTION}
                ) from e
            raise RepositoryException("Hybrid search failed", {"error": str(e)}) from e

        return [_row_to_similar_chunk(row) for row in rows]

    async def search_vector(
        self,
        embedding: List[float],
        filters: SearchFilters,
        limit: int,
        min_similarity: float
    ) -> List[SimilarChunk]:
        stmt = text(
            f"SELECT * FROM {VECTOR_SEARCH_FUNCTION}("
            "CAST(:embedding AS vector), CAST(:workspace_id AS uuid), "
            "CAST(:source_type AS text), :match_limit, :min_similarity)"
        ).bindparams(bindparam("embedding", type_=Vector(self._dimension)))

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    stmt, self._search_params(embedding, filters, limit, min_similarity)
                )
                rows = result.mappings().all()
        except DBAPIError as e:
            raise RepositoryException("Vector search failed", {"error": str(e)}) from e

        return [_row_to_similar_chunk(row) for row in rows]

    async def get_indexed_source_ids(self, source_type: str, candidate_ids: Iterable[str]) -> Set[str]:
        from helpdesk_retrieval.knowledge.infrastructure.models import KnowledgeChunkModel

        ids = [str(i) for i in candidate_ids]
        if not ids:
            return set()

        stmt = select(distinct(KnowledgeChunkModel.source_id)).where(
            KnowledgeChunkModel.source_type == source_type,
            KnowledgeChunkModel.source_id.in_(ids)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return {row for row in result.scalars().all() if row is not None}

    async def get_stats(self, workspace_id: Optional[UUID] = None) -> KnowledgeStats:
        from helpdesk_retrieval.knowledge.infrastructure.models import KnowledgeChunkModel

        stmt = select(
            KnowledgeChunkModel.source_type,
            func.count(KnowledgeChunkModel.id)
        ).group_by(KnowledgeChunkModel.source_type)
        if workspace_id is not None:
            stmt = stmt.where(KnowledgeChunkModel.workspace_id == workspace_id)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            by_source_type = {source_type: count for source_type, count in result.all()}

        return KnowledgeStats(
            total_chunks=sum(by_source_type.values()),
            by_source_type=by_source_type
        )


class SQLAlchemyUsageLogRepository(IUsageLogRepository):
    """SQLAlchemy implementation of the AI usage log."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def log(self, record: AIUsageRecord) -> None:
        from helpdesk_retrieval.knowledge.infrastructure.models import AiUsageLogModel

        async with self._session_factory() as session:
            session.add(AiUsageLogModel(
                id=uuid4(),
                workspace_id=record.workspace_id,
                user_id=record.user_id,
                backend=record.backend,
                model=record.model,
                operation=record.operation,
                input_tokens=record.tokens_in,
                output_tokens=record.tokens_out,
                latency_ms=record.latency_ms,
                success=record.success,
                error=record.error,
            ))
