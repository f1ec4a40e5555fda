"""
Shared Kernel Module
====================

Generic infrastructure used by every bounded context (gateway, knowledge,
indexing): structured logging and metrics export.

DO NOT add retrieval business logic to the shared kernel.
"""
