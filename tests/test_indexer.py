"""Tests for the resumable indexing pipeline, record enrichment and resume scheduling."""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from helpdesk_retrieval.core import ConfigurationException, IndexingAlreadyRunningException
from helpdesk_retrieval.indexing.application import (
    ILegacyRecordSource,
    IndexingOptions,
    IProgressRepository,
    RagIndexerService,
    RecordEnricher,
)
from helpdesk_retrieval.indexing.domain import (
    Counterparty,
    CustomerInfo,
    Deal,
    IndexerProgress,
    LegacyRecord,
    LegacyReply,
    LegacyStats,
    ManagerInfo,
    RecordWithReplies,
)
from helpdesk_retrieval.indexing.infrastructure import IndexingResumeScheduler
from helpdesk_retrieval.knowledge.application import KnowledgeStoreService
from helpdesk_retrieval.knowledge.domain import KnowledgeStats

BASE_URL = "https://crm.test/crm"
CREATED = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
CUTOFF = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _record(record_id: int) -> LegacyRecord:
    return LegacyRecord(
        id=record_id,
        subject=f"Pump issue {record_id}",
        body="The circulation pump makes noise and leaks water after a restart of the boiler.",
        customer_id=100,
        manager_id=5,
        created_at=CREATED,
        closed_at=CREATED + timedelta(hours=30),
        priority=1,
        priority_label="Normal",
        request_type="repair",
    )


def _replies(record_id: int) -> List[LegacyReply]:
    return [
        LegacyReply(id=record_id * 10, record_id=record_id, answer="Please check the seal.",
                    customer_id=7, created_at=CREATED + timedelta(hours=2)),
        LegacyReply(id=record_id * 10 + 1, record_id=record_id, answer="Seal replaced, all good.",
                    customer_id=100, created_at=CREATED + timedelta(hours=20)),
    ]


class FakeLegacySource(ILegacyRecordSource):
    """Legacy CRM with ``total`` closed records, ids 1..total."""

    def __init__(self, total: int = 100):
        self.records = {i: _record(i) for i in range(1, total + 1)}
        self.available = True
        self.batch_offsets: List[int] = []
        self.count_filters: List[Optional[datetime]] = []
        self.batch_filters: List[Optional[datetime]] = []
        self.detail_requests: List[List[int]] = []
        self.missing_details: set = set()
        self.gate: Optional[asyncio.Event] = None
        self.fail_enrichment = False

    def is_available(self) -> bool:
        return self.available

    def _ordered(self, modified_after) -> List[LegacyRecord]:
        ordered = [self.records[k] for k in sorted(self.records)]
        if modified_after is None:
            return ordered
        return [r for r in ordered if r.created_at is not None and r.created_at > modified_after]

    async def count_indexable(self, modified_after=None) -> int:
        self.count_filters.append(modified_after)
        if self.gate is not None:
            await self.gate.wait()
        return len(self._ordered(modified_after))

    async def get_batch(self, limit, offset, modified_after=None) -> List[LegacyRecord]:
        self.batch_offsets.append(offset)
        self.batch_filters.append(modified_after)
        return self._ordered(modified_after)[offset:offset + limit]

    async def get_record_with_replies(self, record_id) -> Optional[RecordWithReplies]:
        record = self.records.get(record_id)
        if record is None:
            return None
        return RecordWithReplies(record, _replies(record_id))

    async def get_batch_with_replies(self, record_ids) -> Dict[int, RecordWithReplies]:
        self.detail_requests.append(list(record_ids))
        return {
            i: RecordWithReplies(self.records[i], _replies(i))
            for i in record_ids if i not in self.missing_details
        }

    async def get_manager_info(self, manager_id) -> Optional[ManagerInfo]:
        if self.fail_enrichment:
            raise RuntimeError("legacy db timeout")
        return ManagerInfo(id=manager_id, full_name="Anna Smirnova", department_name="Service")

    async def get_employee_names(self, user_ids) -> Dict[int, str]:
        return {i: "Oleg Ivanov" for i in user_ids if i == 7}

    async def get_customer_rich_info(self, customer_id) -> Optional[CustomerInfo]:
        if self.fail_enrichment:
            raise RuntimeError("legacy db timeout")
        return CustomerInfo(
            id=customer_id,
            full_name="Ivan Petrov",
            email="ivan@example.com",
            counterparty=Counterparty(id=55, name="Acme LLC", inn="7700000000"),
            total_requests=12,
        )

    async def get_deals_by_counterparty(self, counterparty_id) -> List[Deal]:
        return [Deal(id=i, name=f"Deal {i}", sum=1000.0 * i, is_closed=i % 2 == 0) for i in range(1, 8)]

    async def get_indexing_stats(self) -> LegacyStats:
        return LegacyStats(total_requests=120, closed_requests=100, total_answers=300,
                           average_answers_per_request=2.5)


class FakeProgressRepository(IProgressRepository):
    def __init__(self, saved: Optional[IndexerProgress] = None):
        self.saved = saved
        self.snapshots: List[IndexerProgress] = []

    async def load(self, pipeline_id) -> Optional[IndexerProgress]:
        return dataclasses.replace(self.saved) if self.saved is not None else None

    async def save(self, progress: IndexerProgress) -> None:
        self.saved = dataclasses.replace(progress)
        self.snapshots.append(self.saved)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def legacy_source() -> FakeLegacySource:
    return FakeLegacySource()


@pytest.fixture
def progress_repository() -> FakeProgressRepository:
    return FakeProgressRepository()


@pytest.fixture
def knowledge_store(fake_gateway, chunk_repository) -> KnowledgeStoreService:
    return KnowledgeStoreService(fake_gateway, chunk_repository, rerank_enabled=False)


def _indexer(knowledge_store, legacy_source, progress_repository, **kwargs) -> RagIndexerService:
    kwargs.setdefault("embedding_delay_ms", 0)
    kwargs.setdefault("sleep", SleepRecorder())
    return RagIndexerService(
        knowledge_store,
        legacy_source,
        progress_repository,
        pipeline_id="legacy_requests",
        legacy_base_url=BASE_URL,
        **kwargs
    )


# ========== full runs ==========

@pytest.mark.asyncio
async def test_full_run_indexes_every_record(knowledge_store, legacy_source, progress_repository, chunk_repository):
    legacy_source.records = {i: _record(i) for i in range(1, 26)}
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.index_all(IndexingOptions(batch_size=10))

    assert legacy_source.batch_offsets == [0, 10, 20]
    assert stats.processed_requests == 25
    assert stats.total_chunks == 25
    assert stats.is_running is False
    assert stats.percent_complete == 100
    assert chunk_repository.sources("legacy_request") == {str(i) for i in range(1, 26)}
    assert progress_repository.saved.is_completed is True
    assert progress_repository.saved.last_processed_offset == 25


@pytest.mark.asyncio
async def test_interrupted_run_resumes_from_saved_offset(
    knowledge_store, legacy_source, fake_gateway
):
    saved = IndexerProgress(
        pipeline_id="legacy_requests",
        last_processed_offset=30,
        total_requests=100,
        processed_requests=30,
        total_chunks=30,
    )
    progress_repository = FakeProgressRepository(saved)
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.index_all(IndexingOptions(batch_size=10))

    assert legacy_source.batch_offsets == [30, 40, 50, 60, 70, 80, 90]
    assert stats.resumed is True
    assert stats.processed_requests == 100
    assert stats.total_chunks == 100
    assert len(fake_gateway.embedded) == 70
    assert progress_repository.saved.is_completed is True


@pytest.mark.asyncio
async def test_reset_progress_ignores_saved_offset(knowledge_store, legacy_source):
    legacy_source.records = {i: _record(i) for i in range(1, 21)}
    progress_repository = FakeProgressRepository(
        IndexerProgress(pipeline_id="legacy_requests", last_processed_offset=10, total_requests=20)
    )
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.index_all(IndexingOptions(batch_size=10, reset_progress=True))

    assert legacy_source.batch_offsets == [0, 10]
    assert stats.resumed is False


@pytest.mark.asyncio
async def test_already_indexed_batch_makes_no_embedding_calls(
    knowledge_store, legacy_source, progress_repository, fake_gateway
):
    for i in range(1, 11):
        await knowledge_store.add_chunk(f"existing chunk {i}", "legacy_request", source_id=str(i))
    fake_gateway.embedded.clear()
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.index_all(IndexingOptions(batch_size=10, max_requests=10))

    assert fake_gateway.embedded == []
    assert stats.skipped_requests == 10
    assert stats.processed_requests == 0
    assert legacy_source.detail_requests == []


@pytest.mark.asyncio
async def test_force_reindex_replaces_existing_chunks(
    knowledge_store, legacy_source, progress_repository, chunk_repository
):
    await knowledge_store.add_chunk("stale chunk", "legacy_request", source_id="1")
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.index_all(IndexingOptions(batch_size=5, max_requests=5, force_reindex=True))

    assert stats.skipped_requests == 0
    assert stats.processed_requests == 5
    contents = [c.content for c in chunk_repository.chunks if c.source_id == "1"]
    assert len(contents) == 1
    assert contents[0].startswith("[Request #1 | Pump issue 1")


@pytest.mark.asyncio
async def test_record_failures_are_counted_not_raised(
    knowledge_store, legacy_source, progress_repository, chunk_repository
):
    chunk_repository.fail_delete_for = {"3"}
    legacy_source.missing_details = {4}
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.index_all(IndexingOptions(batch_size=5, max_requests=5))

    assert stats.failed_requests == 2
    assert stats.processed_requests == 5
    assert stats.total_chunks == 3


@pytest.mark.asyncio
async def test_progress_saved_every_n_batches(knowledge_store, legacy_source, progress_repository):
    legacy_source.records = {i: _record(i) for i in range(1, 51)}
    indexer = _indexer(knowledge_store, legacy_source, progress_repository, save_every_batches=2)

    await indexer.index_all(IndexingOptions(batch_size=10))

    assert [p.last_processed_offset for p in progress_repository.snapshots] == [0, 20, 40, 50]


@pytest.mark.asyncio
async def test_progress_callback_may_be_async(knowledge_store, legacy_source, progress_repository):
    legacy_source.records = {i: _record(i) for i in range(1, 4)}
    seen = []

    async def on_progress(stats):
        seen.append(stats.processed_requests)

    indexer = _indexer(knowledge_store, legacy_source, progress_repository)
    await indexer.index_all(IndexingOptions(batch_size=2), on_progress=on_progress)

    assert seen == [1, 2, 3]


@pytest.mark.asyncio
async def test_embedding_calls_are_spaced_by_delay(knowledge_store, legacy_source, progress_repository):
    legacy_source.records = {i: _record(i) for i in range(1, 4)}
    sleep = SleepRecorder()
    indexer = _indexer(knowledge_store, legacy_source, progress_repository, embedding_delay_ms=150, sleep=sleep)

    await indexer.index_all(IndexingOptions(batch_size=10))

    assert sleep.delays == [0.15, 0.15, 0.15]


@pytest.mark.asyncio
async def test_second_run_is_rejected_while_running(knowledge_store, legacy_source, progress_repository):
    legacy_source.records = {i: _record(i) for i in range(1, 3)}
    legacy_source.gate = asyncio.Event()
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    first = asyncio.create_task(indexer.index_all())
    await asyncio.sleep(0)
    assert indexer.is_running is True

    with pytest.raises(IndexingAlreadyRunningException):
        await indexer.index_all()

    legacy_source.gate.set()
    stats = await first
    assert stats.processed_requests == 2
    assert indexer.is_running is False


@pytest.mark.asyncio
async def test_unavailable_indexer_refuses_to_run(knowledge_store, legacy_source, progress_repository, fake_gateway):
    fake_gateway.available = False
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    with pytest.raises(ConfigurationException):
        await indexer.index_all()
    assert indexer.get_status() is None


@pytest.mark.asyncio
async def test_failed_run_saves_progress_and_releases_lock(knowledge_store, legacy_source, progress_repository):
    async def broken_batch(limit, offset, modified_after=None):
        if offset >= 10:
            raise RuntimeError("legacy db went away")
        return [legacy_source.records[i] for i in range(offset + 1, offset + limit + 1)]

    legacy_source.get_batch = broken_batch
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    with pytest.raises(RuntimeError):
        await indexer.index_all(IndexingOptions(batch_size=10))

    assert indexer.is_running is False
    assert progress_repository.saved.last_processed_offset == 10
    assert progress_repository.saved.is_completed is False


# ========== single record ==========

@pytest.mark.asyncio
async def test_index_request_builds_enriched_metadata(
    knowledge_store, legacy_source, progress_repository, chunk_repository
):
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    created = await indexer.index_request(_record(7), _replies(7))

    assert created == 1
    chunk = chunk_repository.chunks[0]
    assert chunk.source_type == "legacy_request"
    assert chunk.source_id == "7"
    assert chunk.content.startswith(
        "[Request #7 | Pump issue 7 | Customer: Ivan Petrov (Acme LLC) | Category: repair | Manager: Anna Smirnova]\n"
    )
    metadata = chunk.metadata
    assert metadata["requestId"] == 7
    assert metadata["legacyUrl"] == f"{BASE_URL}/request/7"
    assert metadata["chunkIndex"] == 0
    assert metadata["totalChunks"] == 1
    assert metadata["answersCount"] == 2
    assert metadata["managerName"] == "Anna Smirnova"
    assert metadata["specialistNames"] == ["Anna Smirnova", "Oleg Ivanov"]
    assert metadata["counterpartyUrl"] == f"{BASE_URL}/counterparty/55"
    assert len(metadata["relatedDeals"]) == 5
    assert metadata["relatedDeals"][0]["url"] == f"{BASE_URL}/deal/1"
    assert metadata["resolutionTimeHours"] == 30
    assert metadata["firstResponseTimeHours"] == 2.0
    assert metadata["closedAt"] == (CREATED + timedelta(hours=30)).isoformat()


@pytest.mark.asyncio
async def test_short_record_creates_no_chunks(
    knowledge_store, legacy_source, progress_repository, chunk_repository, fake_gateway
):
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    created = await indexer.index_request(LegacyRecord(id=9, subject="Hi", body="ok"), [])

    assert created == 0
    assert fake_gateway.embedded == []
    assert chunk_repository.deleted == []


@pytest.mark.asyncio
async def test_reindex_request_outcomes(knowledge_store, legacy_source, progress_repository, fake_gateway):
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    found = await indexer.reindex_request(3)
    missing = await indexer.reindex_request(999)
    fake_gateway.available = False
    unavailable = await indexer.reindex_request(3)

    assert (found.success, found.chunks_created) == (True, 1)
    assert (missing.success, missing.error) == (False, "request not found")
    assert (unavailable.success, unavailable.error) == (False, "indexer unavailable")


@pytest.mark.asyncio
async def test_indexing_statistics_estimate_coverage(
    knowledge_store, legacy_source, progress_repository, chunk_repository
):
    chunk_repository.stats = KnowledgeStats(
        total_chunks=53, by_source_type={"legacy_request": 50, "faq": 3}
    )
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    statistics = await indexer.get_indexing_statistics()

    assert statistics["legacy"]["closed_requests"] == 100
    assert statistics["knowledge_base"]["total_chunks"] == 53
    assert statistics["coverage"] == {"indexed_requests": 20, "percentage": 20}


# ========== enrichment ==========

@pytest.mark.asyncio
async def test_enrichment_degrades_to_empty_values(legacy_source):
    legacy_source.fail_enrichment = True
    enricher = RecordEnricher(legacy_source, BASE_URL)

    employee = await enricher.employee_info(_record(1), [])
    customer = await enricher.customer_info(100)

    assert employee == {"specialists": [], "specialistNames": []}
    assert customer == {"customerIsEmployee": False}


@pytest.mark.asyncio
async def test_enrichment_without_customer_skips_lookup(legacy_source):
    enricher = RecordEnricher(legacy_source, BASE_URL + "/")

    assert await enricher.customer_info(None) == {"customerIsEmployee": False}
    assert enricher.record_url(5) == f"{BASE_URL}/request/5"


# ========== resume ==========

@pytest.mark.asyncio
async def test_resume_does_nothing_without_incomplete_progress(knowledge_store, legacy_source):
    assert await _indexer(knowledge_store, legacy_source, FakeProgressRepository()).resume_if_incomplete() is None

    done = FakeProgressRepository(IndexerProgress(pipeline_id="legacy_requests", is_completed=True))
    assert await _indexer(knowledge_store, legacy_source, done).resume_if_incomplete() is None


@pytest.mark.asyncio
async def test_resume_continues_saved_run(knowledge_store, legacy_source):
    progress_repository = FakeProgressRepository(IndexerProgress(
        pipeline_id="legacy_requests", last_processed_offset=20, total_requests=40, processed_requests=20
    ))
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.resume_if_incomplete()

    assert stats.resumed is True
    assert stats.processed_requests == 40
    assert legacy_source.batch_offsets[0] == 20
    assert progress_repository.saved.is_completed is True


def _recent_half(legacy_source: FakeLegacySource) -> None:
    """Records 51..100 were created after CUTOFF."""
    for i in range(51, 101):
        legacy_source.records[i] = dataclasses.replace(
            legacy_source.records[i], created_at=CUTOFF + timedelta(days=10)
        )


@pytest.mark.asyncio
async def test_resume_replays_the_interrupted_run_filter(
    knowledge_store, legacy_source, progress_repository, chunk_repository
):
    _recent_half(legacy_source)
    original_batch = legacy_source.get_batch

    async def failing_batch(limit, offset, modified_after=None):
        if offset >= 30:
            raise RuntimeError("legacy db went away")
        return await original_batch(limit, offset, modified_after)

    legacy_source.get_batch = failing_batch
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    with pytest.raises(RuntimeError):
        await indexer.index_all(IndexingOptions(batch_size=10, modified_after=CUTOFF))

    assert progress_repository.saved.last_processed_offset == 30
    assert progress_repository.saved.total_requests == 50
    assert progress_repository.saved.modified_after == CUTOFF

    legacy_source.get_batch = original_batch
    legacy_source.count_filters.clear()
    legacy_source.batch_offsets.clear()
    legacy_source.batch_filters.clear()

    stats = await indexer.resume_if_incomplete()

    assert stats.resumed is True
    assert legacy_source.count_filters == [CUTOFF]
    assert legacy_source.batch_offsets == [30, 40]
    assert legacy_source.batch_filters == [CUTOFF, CUTOFF]
    assert stats.processed_requests == 50
    assert chunk_repository.sources("legacy_request") == {str(i) for i in range(51, 101)}
    assert progress_repository.saved.is_completed is True


@pytest.mark.asyncio
async def test_saved_offset_of_other_filter_is_not_reused(knowledge_store, legacy_source):
    _recent_half(legacy_source)
    progress_repository = FakeProgressRepository(IndexerProgress(
        pipeline_id="legacy_requests", last_processed_offset=30, total_requests=100, processed_requests=30
    ))
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.index_all(IndexingOptions(batch_size=10, modified_after=CUTOFF))

    assert stats.resumed is False
    assert legacy_source.batch_offsets == [0, 10, 20, 30, 40]
    assert stats.processed_requests == 50
    assert progress_repository.saved.modified_after == CUTOFF
    assert progress_repository.saved.is_completed is True


@pytest.mark.asyncio
async def test_saved_offset_of_forced_run_is_not_reused_by_plain_run(knowledge_store, legacy_source):
    legacy_source.records = {i: _record(i) for i in range(1, 21)}
    progress_repository = FakeProgressRepository(IndexerProgress(
        pipeline_id="legacy_requests", last_processed_offset=10, total_requests=20, force_reindex=True
    ))
    indexer = _indexer(knowledge_store, legacy_source, progress_repository)

    stats = await indexer.index_all(IndexingOptions(batch_size=10))

    assert stats.resumed is False
    assert legacy_source.batch_offsets == [0, 10]
    assert progress_repository.saved.force_reindex is False


class ExplodingIndexer:
    pipeline_id = "legacy_requests"

    def __init__(self):
        self.calls = 0

    async def resume_if_incomplete(self):
        self.calls += 1
        raise RuntimeError("database unavailable")


@pytest.mark.asyncio
async def test_scheduled_resume_failure_is_contained():
    indexer = ExplodingIndexer()
    scheduler = IndexingResumeScheduler(indexer, delay_seconds=0)

    await scheduler.run_resume()

    assert indexer.calls == 1


@pytest.mark.asyncio
async def test_resume_scheduler_lifecycle():
    scheduler = IndexingResumeScheduler(ExplodingIndexer(), delay_seconds=3600)

    await scheduler.start()
    assert scheduler.is_running is True
    assert scheduler._scheduler.get_job("indexer_resume") is not None

    await scheduler.stop()
    assert scheduler.is_running is False
