"""
Indexing Pipeline Bounded Context
=================================

Resumable, rate-limited batch job turning legacy CRM records into
enriched knowledge chunks.
"""
