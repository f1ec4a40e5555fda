"""
Indexing Domain Entities
========================

Domain entities for the legacy-record indexing pipeline.

Contains the read model of the legacy CRM (records, replies and the
identities used for enrichment) and the pipeline's own progress/statistics
objects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


# ========== Legacy read model ==========

@dataclass
class LegacyRecord:
    """A closed customer request in the legacy CRM."""
    id: int
    subject: Optional[str]
    body: Optional[str]
    customer_id: Optional[int] = None
    manager_id: Optional[int] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    priority: int = 0
    priority_label: str = ""
    request_type: Optional[str] = None


@dataclass
class LegacyReply:
    """One message in a record's thread."""
    id: int
    record_id: int
    answer: Optional[str]
    customer_id: Optional[int] = None
    created_at: Optional[datetime] = None
    is_internal: bool = False


@dataclass
class RecordWithReplies:
    record: LegacyRecord
    replies: List[LegacyReply] = field(default_factory=list)


@dataclass
class ManagerInfo:
    id: int
    full_name: str
    alias: Optional[str] = None
    department_name: Optional[str] = None


@dataclass
class Counterparty:
    """Company the customer belongs to."""
    id: int
    name: str
    inn: Optional[str] = None  # tax id


@dataclass
class CustomerInfo:
    id: int
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    counterparty: Optional[Counterparty] = None
    is_employee: bool = False
    total_requests: Optional[int] = None


@dataclass
class Deal:
    id: int
    name: str
    sum: float
    is_closed: bool
    stage_name: Optional[str] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


@dataclass
class LegacyStats:
    """Aggregate counts of the legacy record set."""
    total_requests: int = 0
    closed_requests: int = 0
    total_answers: int = 0
    average_answers_per_request: float = 0.0


# ========== Pipeline state ==========

@dataclass
class IndexerProgress:
    """
    Persisted progress of an indexing run.

    One row per pipeline id. ``last_processed_offset`` is the position in
    the ordered record set up to which every batch was fully handled.
    ``modified_after`` and ``force_reindex`` are the options of the run that
    owns the offset; a resume replays them so the offset means the same thing.
    """
    pipeline_id: str
    last_processed_offset: int = 0
    total_requests: int = 0
    processed_requests: int = 0
    skipped_requests: int = 0
    failed_requests: int = 0
    total_chunks: int = 0
    is_completed: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    modified_after: Optional[datetime] = None
    force_reindex: bool = False


@dataclass
class IndexingStats:
    """In-memory status of the current (or last) run."""
    total_requests: int = 0
    processed_requests: int = 0
    skipped_requests: int = 0
    failed_requests: int = 0
    total_chunks: int = 0
    last_processed_offset: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    is_running: bool = False
    resumed: bool = False

    @property
    def percent_complete(self) -> int:
        if self.total_requests <= 0:
            return 0
        return round(self.last_processed_offset / self.total_requests * 100)


@dataclass
class IndexResult:
    """Outcome of reindexing one record."""
    request_id: int
    chunks_created: int
    success: bool
    error: Optional[str] = None
