"""
Knowledge Domain Layer
======================

Contains:
- Entities: KnowledgeChunk, SimilarChunk, SearchFilters, KnowledgeStats, AIUsageRecord
- EmbeddingCache: TTL + FIFO query embedding cache
- Reranker: heuristic re-ordering of search candidates
"""

from helpdesk_retrieval.knowledge.domain.entities import (
    KnowledgeChunk,
    SimilarChunk,
    SearchFilters,
    KnowledgeStats,
    AIUsageRecord,
)
from helpdesk_retrieval.knowledge.domain.embedding_cache import EmbeddingCache
from helpdesk_retrieval.knowledge.domain.reranker import rerank_results, tokenize

__all__ = [
    # Entities
    "KnowledgeChunk",
    "SimilarChunk",
    "SearchFilters",
    "KnowledgeStats",
    "AIUsageRecord",
    # Cache
    "EmbeddingCache",
    # Reranking
    "rerank_results",
    "tokenize",
]
