"""Pytest configuration and shared fakes for the helpdesk retrieval suite."""

from __future__ import annotations

import os
from typing import Iterable, List, Optional, Set


def _ensure_test_env() -> None:
    """Keep real credentials from the shell out of the settings object."""
    os.environ["ENVIRONMENT"] = "test"
    os.environ["MOCK_LLM"] = "false"
    for key in (
        "YANDEX_CLOUD_API_KEY",
        "YANDEX_CLOUD_FOLDER_ID",
        "GROQ_API_KEY",
        "OPENAI_API_KEY",
        "ZAI_API_KEY",
        "GRAFANA_HOST",
        "GRAFANA_API_KEY",
        "GRAFANA_INSTANCE_ID",
    ):
        os.environ[key] = ""


_ensure_test_env()

import pytest  # noqa: E402

from helpdesk_retrieval.core import HybridSearchUnavailableException  # noqa: E402
from helpdesk_retrieval.gateway.domain import EmbeddingResult  # noqa: E402
from helpdesk_retrieval.knowledge.application import (  # noqa: E402
    IChunkRepository,
    IUsageLogRepository,
)
from helpdesk_retrieval.knowledge.domain import (  # noqa: E402
    AIUsageRecord,
    KnowledgeChunk,
    KnowledgeStats,
    SearchFilters,
    SimilarChunk,
)


class FakeGateway:
    """Embedding-only stand-in for ProviderGateway."""

    def __init__(self, dimension: int = 4, available: bool = True):
        self.dimension = dimension
        self.available = available
        self.embedded: List[str] = []

    def is_embedding_available(self) -> bool:
        return self.available

    async def embed(self, text: str) -> EmbeddingResult:
        self.embedded.append(text)
        return EmbeddingResult(
            vector=[float(len(text) % 7)] * self.dimension,
            tokens_in=max(1, len(text) // 4),
            model="fake-embedding",
            backend_name="fake",
            latency_ms=3,
        )


class FakeChunkRepository(IChunkRepository):
    """In-memory chunk store with scripted search results."""

    def __init__(self):
        self.chunks: List[KnowledgeChunk] = []
        self.deleted: List[tuple] = []
        self.candidates: List[SimilarChunk] = []
        self.hybrid_error: Optional[Exception] = None
        self.hybrid_calls: List[dict] = []
        self.vector_calls: List[dict] = []
        self.fail_delete_for: Set[str] = set()
        self.stats = KnowledgeStats(total_chunks=0)

    async def add(self, chunk: KnowledgeChunk) -> KnowledgeChunk:
        chunk.id = chunk.id or f"chunk-{len(self.chunks) + 1}"
        self.chunks.append(chunk)
        return chunk

    async def delete_by_source(self, source_type: str, source_id: str) -> int:
        if source_id in self.fail_delete_for:
            raise RuntimeError(f"delete failed for {source_id}")
        before = len(self.chunks)
        self.chunks = [
            c for c in self.chunks
            if not (c.source_type == source_type and c.source_id == source_id)
        ]
        self.deleted.append((source_type, source_id))
        return before - len(self.chunks)

    async def search_hybrid(
        self,
        embedding: List[float],
        query_text: str,
        filters: SearchFilters,
        limit: int,
        min_similarity: float
    ) -> List[SimilarChunk]:
        self.hybrid_calls.append({"query_text": query_text, "limit": limit, "filters": filters})
        if self.hybrid_error is not None:
            raise self.hybrid_error
        return list(self.candidates)

    async def search_vector(
        self,
        embedding: List[float],
        filters: SearchFilters,
        limit: int,
        min_similarity: float
    ) -> List[SimilarChunk]:
        self.vector_calls.append({"limit": limit, "filters": filters})
        return list(self.candidates)

    async def get_indexed_source_ids(self, source_type: str, candidate_ids: Iterable[str]) -> Set[str]:
        wanted = set(candidate_ids)
        return {
            c.source_id for c in self.chunks
            if c.source_type == source_type and c.source_id in wanted
        }

    async def get_stats(self, workspace_id=None) -> KnowledgeStats:
        return self.stats

    def sources(self, source_type: str) -> Set[str]:
        return {c.source_id for c in self.chunks if c.source_type == source_type}


class FakeUsageRepository(IUsageLogRepository):
    def __init__(self, fail: bool = False):
        self.records: List[AIUsageRecord] = []
        self.fail = fail

    async def log(self, record: AIUsageRecord) -> None:
        if self.fail:
            raise RuntimeError("usage table missing")
        self.records.append(record)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def chunk_repository() -> FakeChunkRepository:
    return FakeChunkRepository()


@pytest.fixture
def usage_repository() -> FakeUsageRepository:
    return FakeUsageRepository()


@pytest.fixture
def hybrid_unavailable() -> HybridSearchUnavailableException:
    return HybridSearchUnavailableException("Hybrid search function is not installed")
