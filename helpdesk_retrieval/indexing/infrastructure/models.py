"""
Indexing Infrastructure Models
==============================

SQLAlchemy ORM model for persisted indexer progress.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk_retrieval.infrastructure.database import Base


class IndexerStateModel(Base):
    """
    Database model for IndexerProgress.

    Maps to the 'indexer_state' table, one row per pipeline id.
    """
    __tablename__ = "indexer_state"

    pipeline_id: Mapped[str] = mapped_column(String(100), primary_key=True)

    last_processed_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Options of the run that owns last_processed_offset
    modified_after: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    force_reindex: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
