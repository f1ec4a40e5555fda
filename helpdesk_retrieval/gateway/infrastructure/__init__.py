"""
Gateway Infrastructure Layer
============================

Contains:
- Backends: Yandex Cloud, Ollama, Groq, OpenAI, Z.AI, Mock
- Registry: settings-driven backend registration and gateway factory
"""

from helpdesk_retrieval.gateway.infrastructure.backends import (
    BaseBackend,
    HttpBackend,
    OpenAICompatibleBackend,
    YandexCloudBackend,
    OllamaBackend,
    GroqBackend,
    OpenAIBackend,
    ZAIBackend,
    MockBackend,
)
from helpdesk_retrieval.gateway.infrastructure.registry import (
    BackendRegistry,
    build_backend_registry,
    create_provider_gateway,
)

__all__ = [
    # Backends
    "BaseBackend",
    "HttpBackend",
    "OpenAICompatibleBackend",
    "YandexCloudBackend",
    "OllamaBackend",
    "GroqBackend",
    "OpenAIBackend",
    "ZAIBackend",
    "MockBackend",
    # Registry
    "BackendRegistry",
    "build_backend_registry",
    "create_provider_gateway",
]
