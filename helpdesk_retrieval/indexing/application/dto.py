"""
Indexing Application DTOs
=========================

Options accepted by an indexing run.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class IndexingOptions(BaseModel):
    """Options for RagIndexerService.index_all."""
    batch_size: int = Field(default=10, ge=1, le=500, description="Records per batch")
    max_requests: Optional[int] = Field(None, ge=1, description="Stop after this many records")
    modified_after: Optional[datetime] = Field(None, description="Only records added after this instant")
    force_reindex: bool = Field(default=False, description="Re-index records that already have chunks")
    reset_progress: bool = Field(default=False, description="Ignore saved progress and start from offset 0")
