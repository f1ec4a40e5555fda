"""
Helpdesk Retrieval
==================

AI retrieval pipeline for the helpdesk: a fallback-aware provider gateway,
a hybrid vector + lexical knowledge store and a resumable indexing pipeline
over the legacy request archive.

Architecture Pattern: Modular Monolith
- gateway: generation/embedding backends behind one interface
- knowledge: chunk persistence, hybrid search, query embedding cache
- indexing: batch job turning legacy records into knowledge chunks
"""

__version__ = "1.0.0"
