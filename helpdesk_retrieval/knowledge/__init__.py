"""
Knowledge Store Bounded Context
===============================

Chunk storage and hybrid (vector + lexical) similarity search over
PostgreSQL/pgvector, with a short-lived query embedding cache.
"""
