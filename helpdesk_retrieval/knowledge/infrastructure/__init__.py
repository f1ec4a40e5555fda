"""
Knowledge Infrastructure Layer
==============================

Contains:
- Models: KnowledgeChunkModel, AiUsageLogModel
- Repositories: SQLAlchemyChunkRepository, SQLAlchemyUsageLogRepository
- SQL: search trigger and search function installer
"""

from helpdesk_retrieval.knowledge.infrastructure.repositories import (
    SQLAlchemyChunkRepository,
    SQLAlchemyUsageLogRepository,
    is_missing_function_error,
)
from helpdesk_retrieval.knowledge.infrastructure.sql import (
    build_search_ddl,
    install_search_functions,
)

__all__ = [
    "SQLAlchemyChunkRepository",
    "SQLAlchemyUsageLogRepository",
    "is_missing_function_error",
    "build_search_ddl",
    "install_search_functions",
]
