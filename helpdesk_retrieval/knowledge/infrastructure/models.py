"""
Knowledge Infrastructure Models
===============================

SQLAlchemy ORM models for the knowledge store.

The embedding column is a pgvector ``vector`` at the canonical dimension;
``search_vector`` is maintained by a trigger (see sql.py) for the lexical
half of hybrid search.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB, TSVECTOR
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk_retrieval.config import settings
from helpdesk_retrieval.infrastructure.database import Base


class KnowledgeChunkModel(Base):
    """
    Database model for KnowledgeChunk.

    Maps to the 'knowledge_chunks' table.
    """
    __tablename__ = "knowledge_chunks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)

    # Source reference
    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding = mapped_column(Vector(settings.embedding_dimension), nullable=True)
    search_vector = mapped_column(TSVECTOR, nullable=True)

    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_knowledge_chunks_source", "source_type", "source_id"),
        Index("ix_knowledge_chunks_search_vector", "search_vector", postgresql_using="gin"),
        Index(
            "ix_knowledge_chunks_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )


class AiUsageLogModel(Base):
    """
    Database model for AI usage accounting.

    Maps to the 'ai_usage_logs' table.
    """
    __tablename__ = "ai_usage_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    backend: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)  # embed | search

    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
