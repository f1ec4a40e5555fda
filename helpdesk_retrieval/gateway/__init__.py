"""
Provider Gateway Bounded Context
================================

Single entry point for text generation and embeddings with ordered
fallback across heterogeneous backends.

Layers:
- domain: value objects (messages, results, descriptors)
- application: ProviderGateway, backend interface, output validation
- infrastructure: concrete backends and the registry
"""
