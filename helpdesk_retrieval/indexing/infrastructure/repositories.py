"""
Indexing Infrastructure Repositories
====================================

SQLAlchemy implementation of the progress repository.
"""

from datetime import datetime, timezone
from typing import AsyncContextManager, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk_retrieval.core import RepositoryException
from helpdesk_retrieval.indexing.application import IProgressRepository
from helpdesk_retrieval.indexing.domain import IndexerProgress
from helpdesk_retrieval.infrastructure.database import get_session_context

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class SQLAlchemyProgressRepository(IProgressRepository):
    """Stores IndexerProgress in the indexer_state table."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def load(self, pipeline_id: str) -> Optional[IndexerProgress]:
        from helpdesk_retrieval.indexing.infrastructure.models import IndexerStateModel

        async with self._session_factory() as session:
            result = await session.execute(
                select(IndexerStateModel).where(IndexerStateModel.pipeline_id == pipeline_id)
            )
            model = result.scalar_one_or_none()

        if model is None:
            return None

        return IndexerProgress(
            pipeline_id=model.pipeline_id,
            last_processed_offset=model.last_processed_offset,
            total_requests=model.total_requests,
            processed_requests=model.processed_requests,
            skipped_requests=model.skipped_requests,
            failed_requests=model.failed_requests,
            total_chunks=model.total_chunks,
            is_completed=model.is_completed,
            started_at=model.started_at,
            updated_at=model.updated_at,
            modified_after=model.modified_after,
            force_reindex=model.force_reindex,
        )

    async def save(self, progress: IndexerProgress) -> None:
        from helpdesk_retrieval.indexing.infrastructure.models import IndexerStateModel

        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                model = await session.get(IndexerStateModel, progress.pipeline_id)
                if model is None:
                    model = IndexerStateModel(pipeline_id=progress.pipeline_id)
                    session.add(model)

                model.last_processed_offset = progress.last_processed_offset
                model.total_requests = progress.total_requests
                model.processed_requests = progress.processed_requests
                model.skipped_requests = progress.skipped_requests
                model.failed_requests = progress.failed_requests
                model.total_chunks = progress.total_chunks
                model.is_completed = progress.is_completed
                model.started_at = progress.started_at
                model.updated_at = progress.updated_at or now
                model.modified_after = progress.modified_after
                model.force_reindex = progress.force_reindex
        except DBAPIError as e:
            raise RepositoryException(
                "Failed to save indexer progress",
                {"pipeline_id": progress.pipeline_id, "error": str(e)}
            ) from e
