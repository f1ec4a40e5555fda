"""
Knowledge Application Layer
===========================

Contains:
- Services: KnowledgeStoreService
- Interfaces: IChunkRepository, IUsageLogRepository
"""

from helpdesk_retrieval.knowledge.application.services import (
    KnowledgeStoreService,
    IChunkRepository,
    IUsageLogRepository,
)

__all__ = [
    "KnowledgeStoreService",
    "IChunkRepository",
    "IUsageLogRepository",
]
