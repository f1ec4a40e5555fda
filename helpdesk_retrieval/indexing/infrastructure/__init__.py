"""
Indexing Infrastructure Layer
=============================

Contains:
- Models: IndexerStateModel
- Repositories: SQLAlchemyProgressRepository
- External: IndexingResumeScheduler (APScheduler)
"""

from helpdesk_retrieval.indexing.infrastructure.repositories import SQLAlchemyProgressRepository
from helpdesk_retrieval.indexing.infrastructure.external import IndexingResumeScheduler

__all__ = [
    "SQLAlchemyProgressRepository",
    "IndexingResumeScheduler",
]
