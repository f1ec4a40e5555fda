"""
Indexing Application Layer
==========================

Contains:
- Services: RagIndexerService
- Interfaces: ILegacyRecordSource (legacy CRM port), IProgressRepository
- DTOs: IndexingOptions
- Enrichment: RecordEnricher
"""

from helpdesk_retrieval.indexing.application.dto import IndexingOptions
from helpdesk_retrieval.indexing.application.enrichment import RecordEnricher
from helpdesk_retrieval.indexing.application.services import (
    RagIndexerService,
    ILegacyRecordSource,
    IProgressRepository,
    CHUNKS_PER_REQUEST_ESTIMATE,
)

__all__ = [
    # Services
    "RagIndexerService",
    "CHUNKS_PER_REQUEST_ESTIMATE",
    # Interfaces
    "ILegacyRecordSource",
    "IProgressRepository",
    # DTOs
    "IndexingOptions",
    # Enrichment
    "RecordEnricher",
]
