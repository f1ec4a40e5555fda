"""
Indexing Application Services
=============================

RagIndexerService: turns closed legacy CRM records into knowledge chunks.

A run walks the ordered record set in batches, skips records that already
have chunks, enriches and chunks the rest, and checkpoints its offset so an
interrupted run resumes instead of starting over. Embedding calls are spaced
by a fixed delay to stay under provider rate limits.
"""

import asyncio
import inspect
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from helpdesk_retrieval.config import settings, SourceType
from helpdesk_retrieval.core import ConfigurationException, IndexingAlreadyRunningException
from helpdesk_retrieval.indexing.application.dto import IndexingOptions
from helpdesk_retrieval.indexing.application.enrichment import RecordEnricher
from helpdesk_retrieval.indexing.domain import (
    CustomerInfo,
    Deal,
    IndexerProgress,
    IndexingStats,
    IndexResult,
    LegacyRecord,
    LegacyReply,
    LegacyStats,
    ManagerInfo,
    RecordWithReplies,
    TextChunker,
    MIN_TEXT_LENGTH,
    build_contextual_prefix,
    extract_analytics,
    format_record_with_replies,
)
from helpdesk_retrieval.knowledge.application import KnowledgeStoreService
from helpdesk_retrieval.shared.infrastructure.logging import get_context_logger, get_logger

logger = get_logger(__name__)

# Average chunks per indexed record, used to estimate coverage
CHUNKS_PER_REQUEST_ESTIMATE = 2.5

ProgressCallback = Callable[[IndexingStats], Union[None, Awaitable[None]]]


# ========== Port Interfaces (Dependency Inversion) ==========

class ILegacyRecordSource(ABC):
    """Read-only port into the legacy CRM."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the legacy datastore is reachable."""

    @abstractmethod
    async def count_indexable(self, modified_after: Optional[datetime] = None) -> int:
        """Count closed records eligible for indexing."""

    @abstractmethod
    async def get_batch(
        self,
        limit: int,
        offset: int,
        modified_after: Optional[datetime] = None
    ) -> List[LegacyRecord]:
        """Closed records ordered by id."""

    @abstractmethod
    async def get_record_with_replies(self, record_id: int) -> Optional[RecordWithReplies]:
        """One record with its thread, None if missing."""

    @abstractmethod
    async def get_batch_with_replies(self, record_ids: List[int]) -> Dict[int, RecordWithReplies]:
        """Records with threads, keyed by record id."""

    @abstractmethod
    async def get_manager_info(self, manager_id: int) -> Optional[ManagerInfo]:
        """Manager identity and department."""

    @abstractmethod
    async def get_employee_names(self, user_ids: List[int]) -> Dict[int, str]:
        """Full names of the given users that are employees."""

    @abstractmethod
    async def get_customer_rich_info(self, customer_id: int) -> Optional[CustomerInfo]:
        """Customer identity with counterparty."""

    @abstractmethod
    async def get_deals_by_counterparty(self, counterparty_id: int) -> List[Deal]:
        """Latest deals of a counterparty, newest first."""

    @abstractmethod
    async def get_indexing_stats(self) -> LegacyStats:
        """Aggregate record/reply counts."""


class IProgressRepository(ABC):
    """Interface for persisted indexer progress."""

    @abstractmethod
    async def load(self, pipeline_id: str) -> Optional[IndexerProgress]:
        """Get saved progress, None if the pipeline never ran."""

    @abstractmethod
    async def save(self, progress: IndexerProgress) -> None:
        """Insert or update the progress row."""


# ========== Application Services ==========

class RagIndexerService:
    """
    Resumable, rate-limited indexing of legacy records.

    At most one run is active per instance.
    """

    def __init__(
        self,
        knowledge_store: KnowledgeStoreService,
        legacy_source: ILegacyRecordSource,
        progress_repository: IProgressRepository,
        chunker: Optional[TextChunker] = None,
        pipeline_id: Optional[str] = None,
        embedding_delay_ms: Optional[int] = None,
        save_every_batches: Optional[int] = None,
        legacy_base_url: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self._store = knowledge_store
        self._source = legacy_source
        self._progress_repo = progress_repository
        self._chunker = chunker or TextChunker(
            chunk_size_tokens=settings.chunk_size_tokens,
            overlap_tokens=settings.chunk_overlap_tokens,
            chars_per_token=settings.chars_per_token
        )
        self._pipeline_id = pipeline_id or settings.indexer_pipeline_id
        delay_ms = settings.indexer_embedding_delay_ms if embedding_delay_ms is None else embedding_delay_ms
        self._embedding_delay = delay_ms / 1000
        self._save_every = save_every_batches or settings.indexer_save_every_batches
        self._enricher = RecordEnricher(legacy_source, legacy_base_url)
        self._sleep = sleep
        self._stats: Optional[IndexingStats] = None

    @property
    def pipeline_id(self) -> str:
        return self._pipeline_id

    @property
    def is_running(self) -> bool:
        return self._stats is not None and self._stats.is_running

    def is_available(self) -> bool:
        """Both the knowledge store and the legacy source must be usable."""
        return self._store.is_available() and self._source.is_available()

    def get_status(self) -> Optional[IndexingStats]:
        """Stats of the current or last run in this process."""
        return self._stats

    async def get_saved_progress(self) -> Optional[IndexerProgress]:
        return await self._progress_repo.load(self._pipeline_id)

    # ---------- full run ----------

    async def index_all(
        self,
        options: Optional[IndexingOptions] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> IndexingStats:
        """
        Index every closed record, resuming saved progress when present.

        Raises:
            ConfigurationException: Store or legacy source unavailable
            IndexingAlreadyRunningException: A run is already active
        """
        options = options or IndexingOptions()

        if not self.is_available():
            raise ConfigurationException(
                "RAG indexer unavailable: check embedding backends and legacy source"
            )
        if self.is_running:
            raise IndexingAlreadyRunningException(self._pipeline_id)

        # Claim the run before the first await
        stats = IndexingStats(is_running=True)
        self._stats = stats
        run_logger = get_context_logger(__name__, f"index-{uuid.uuid4().hex[:8]}")

        progress: Optional[IndexerProgress] = None
        try:
            total_count = await self._source.count_indexable(options.modified_after)
            target = min(total_count, options.max_requests) if options.max_requests else total_count

            progress = await self._start_progress(options, target, stats, run_logger)
            offset = progress.last_processed_offset
            batches_done = 0

            run_logger.info(
                "Indexing started",
                extra={
                    "pipeline_id": self._pipeline_id,
                    "total_requests": target,
                    "start_offset": offset,
                    "resumed": stats.resumed,
                    "force_reindex": options.force_reindex,
                }
            )

            while offset < target:
                limit = min(options.batch_size, target - offset)
                records = await self._source.get_batch(limit, offset, options.modified_after)
                if not records:
                    break

                await self._process_batch(records, options, stats, on_progress, run_logger)

                offset += len(records)
                batches_done += 1
                stats.last_processed_offset = offset
                self._sync_progress(progress, stats)

                if batches_done % self._save_every == 0:
                    await self._progress_repo.save(progress)
                    run_logger.info(
                        "Indexing progress saved",
                        extra={
                            "offset": offset,
                            "total_requests": target,
                            "percent": stats.percent_complete,
                        }
                    )

            progress.is_completed = offset >= target
        except Exception as e:
            run_logger.error(
                "Indexing run failed",
                extra={"pipeline_id": self._pipeline_id, "error": str(e)},
                exc_info=True
            )
            raise
        finally:
            stats.is_running = False
            stats.finished_at = datetime.now(timezone.utc)
            if progress is not None:
                self._sync_progress(progress, stats)
                await self._save_final_progress(progress, run_logger)

        run_logger.info(
            "Indexing finished",
            extra={
                "processed_requests": stats.processed_requests,
                "skipped_requests": stats.skipped_requests,
                "failed_requests": stats.failed_requests,
                "total_chunks": stats.total_chunks,
                "completed": progress.is_completed,
            }
        )
        return stats

    async def _start_progress(
        self,
        options: IndexingOptions,
        target: int,
        stats: IndexingStats,
        run_logger
    ) -> IndexerProgress:
        saved = None if options.reset_progress else await self._progress_repo.load(self._pipeline_id)

        if saved is not None and not saved.is_completed and not self._same_run_options(saved, options):
            run_logger.info(
                "Saved indexing progress belongs to a run with other options, starting fresh",
                extra={
                    "offset": saved.last_processed_offset,
                    "saved_modified_after": saved.modified_after.isoformat() if saved.modified_after else None,
                    "saved_force_reindex": saved.force_reindex,
                }
            )
            saved = None

        if saved is not None and not saved.is_completed and 0 < saved.last_processed_offset < target:
            stats.resumed = True
            stats.started_at = saved.started_at
            stats.last_processed_offset = saved.last_processed_offset
            stats.processed_requests = saved.processed_requests
            stats.skipped_requests = saved.skipped_requests
            stats.failed_requests = saved.failed_requests
            stats.total_chunks = saved.total_chunks
            stats.total_requests = target
            saved.total_requests = target
            run_logger.info(
                "Resuming saved indexing progress",
                extra={"offset": saved.last_processed_offset, "total_requests": target}
            )
            return saved

        stats.total_requests = target
        progress = IndexerProgress(
            pipeline_id=self._pipeline_id,
            total_requests=target,
            started_at=stats.started_at,
            modified_after=options.modified_after,
            force_reindex=options.force_reindex
        )
        await self._progress_repo.save(progress)
        return progress

    @staticmethod
    def _same_run_options(saved: IndexerProgress, options: IndexingOptions) -> bool:
        return (
            saved.modified_after == options.modified_after
            and saved.force_reindex == options.force_reindex
        )

    async def _process_batch(
        self,
        records: List[LegacyRecord],
        options: IndexingOptions,
        stats: IndexingStats,
        on_progress: Optional[ProgressCallback],
        run_logger
    ) -> None:
        if options.force_reindex:
            already_indexed = set()
        else:
            already_indexed = await self._store.get_indexed_source_ids(
                SourceType.LEGACY_REQUEST, [str(r.id) for r in records]
            )

        to_index = [r.id for r in records if str(r.id) not in already_indexed]
        skipped = len(records) - len(to_index)
        if skipped:
            stats.skipped_requests += skipped
            run_logger.debug("Skipping already indexed records", extra={"count": skipped})

        if not to_index:
            await self._notify(on_progress, stats)
            return

        details = await self._source.get_batch_with_replies(to_index)

        for record_id in to_index:
            data = details.get(record_id)
            if data is None:
                stats.failed_requests += 1
                run_logger.warning("Record vanished from legacy source", extra={"request_id": record_id})
            else:
                try:
                    stats.total_chunks += await self.index_request(data.record, data.replies)
                except Exception as e:
                    stats.failed_requests += 1
                    run_logger.error(
                        "Failed to index record",
                        extra={"request_id": record_id, "error": str(e)}
                    )
            stats.processed_requests += 1
            await self._notify(on_progress, stats)

    @staticmethod
    async def _notify(on_progress: Optional[ProgressCallback], stats: IndexingStats) -> None:
        if on_progress is None:
            return
        result = on_progress(stats)
        if inspect.isawaitable(result):
            await result

    @staticmethod
    def _sync_progress(progress: IndexerProgress, stats: IndexingStats) -> None:
        progress.last_processed_offset = stats.last_processed_offset
        progress.total_requests = stats.total_requests
        progress.processed_requests = stats.processed_requests
        progress.skipped_requests = stats.skipped_requests
        progress.failed_requests = stats.failed_requests
        progress.total_chunks = stats.total_chunks
        progress.updated_at = datetime.now(timezone.utc)

    async def _save_final_progress(self, progress: IndexerProgress, run_logger) -> None:
        try:
            await self._progress_repo.save(progress)
        except Exception as e:
            # keep the run's own outcome (result or exception) visible
            run_logger.error(
                "Failed to save indexing progress",
                extra={"offset": progress.last_processed_offset, "error": str(e)}
            )

    # ---------- single record ----------

    async def index_request(self, record: LegacyRecord, replies: List[LegacyReply]) -> int:
        """
        Replace all chunks of one record.

        Returns:
            Number of chunks created (0 for records with too little text)
        """
        full_text = format_record_with_replies(record, replies)
        if len(full_text.strip()) < MIN_TEXT_LENGTH:
            return 0

        employee_info, customer_info = await asyncio.gather(
            self._enricher.employee_info(record, replies),
            self._enricher.customer_info(record.customer_id),
        )
        analytics = extract_analytics(record, replies)

        await self._store.remove_chunks_by_source(SourceType.LEGACY_REQUEST, str(record.id))

        chunks = self._chunker.split(full_text)
        prefix = build_contextual_prefix(
            record,
            customer_name=customer_info.get("customerName"),
            counterparty_name=customer_info.get("counterpartyName"),
            manager_name=employee_info.get("managerName"),
        )

        created = 0
        for index, chunk in enumerate(chunks):
            metadata = {
                "requestId": record.id,
                "subject": record.subject,
                "customerId": record.customer_id,
                "managerId": record.manager_id,
                "createdAt": record.created_at.isoformat() if record.created_at else None,
                "closedAt": record.closed_at.isoformat() if record.closed_at else None,
                "chunkIndex": index,
                "totalChunks": len(chunks),
                "answersCount": len(replies),
                "legacyUrl": self._enricher.record_url(record.id),
                **employee_info,
                **customer_info,
                **analytics,
            }
            try:
                await self._store.add_chunk(
                    content=f"{prefix}\n{chunk}",
                    source_type=SourceType.LEGACY_REQUEST,
                    source_id=str(record.id),
                    metadata=metadata,
                )
                created += 1
            except Exception as e:
                logger.warning(
                    "Failed to create chunk",
                    extra={"request_id": record.id, "chunk_index": index, "error": str(e)}
                )
            if self._embedding_delay > 0:
                await self._sleep(self._embedding_delay)

        return created

    async def reindex_request(self, request_id: int) -> IndexResult:
        """Re-index one record by id; never raises."""
        if not self.is_available():
            return IndexResult(request_id, 0, False, "indexer unavailable")

        try:
            data = await self._source.get_record_with_replies(request_id)
            if data is None:
                return IndexResult(request_id, 0, False, "request not found")

            chunks_created = await self.index_request(data.record, data.replies)
            return IndexResult(request_id, chunks_created, True)
        except Exception as e:
            logger.error("Reindex failed", extra={"request_id": request_id, "error": str(e)})
            return IndexResult(request_id, 0, False, str(e))

    # ---------- statistics ----------

    async def get_indexing_statistics(self) -> Dict[str, Any]:
        """Legacy totals, knowledge base counts and estimated coverage."""
        legacy_stats, kb_stats = await asyncio.gather(
            self._source.get_indexing_stats(),
            self._store.get_stats(),
        )

        legacy_chunks = kb_stats.by_source_type.get(SourceType.LEGACY_REQUEST, 0)
        indexed_requests = round(legacy_chunks / CHUNKS_PER_REQUEST_ESTIMATE)
        percentage = (
            round(indexed_requests / legacy_stats.closed_requests * 100)
            if legacy_stats.closed_requests > 0 else 0
        )

        return {
            "legacy": {
                "total_requests": legacy_stats.total_requests,
                "closed_requests": legacy_stats.closed_requests,
                "total_answers": legacy_stats.total_answers,
                "average_answers_per_request": legacy_stats.average_answers_per_request,
            },
            "knowledge_base": {
                "total_chunks": kb_stats.total_chunks,
                "by_source_type": dict(kb_stats.by_source_type),
            },
            "coverage": {
                "indexed_requests": indexed_requests,
                "percentage": percentage,
            },
        }

    # ---------- startup resume ----------

    async def resume_if_incomplete(self) -> Optional[IndexingStats]:
        """
        Continue a saved, unfinished run.

        Returns None when there is nothing to resume or the indexer
        cannot run right now.
        """
        progress = await self.get_saved_progress()
        if progress is None or progress.is_completed:
            logger.info("No incomplete indexing run to resume", extra={"pipeline_id": self._pipeline_id})
            return None

        if self.is_running:
            logger.info("Indexing already running, resume skipped", extra={"pipeline_id": self._pipeline_id})
            return None

        if not self.is_available():
            logger.warning(
                "Indexer unavailable, resume skipped",
                extra={"pipeline_id": self._pipeline_id, "offset": progress.last_processed_offset}
            )
            return None

        logger.info(
            "Resuming incomplete indexing run",
            extra={
                "pipeline_id": self._pipeline_id,
                "offset": progress.last_processed_offset,
                "total_requests": progress.total_requests,
                "modified_after": progress.modified_after.isoformat() if progress.modified_after else None,
            }
        )
        return await self.index_all(IndexingOptions(
            batch_size=settings.indexer_batch_size,
            max_requests=progress.total_requests or None,
            modified_after=progress.modified_after,
            force_reindex=progress.force_reindex,
        ))
