"""
Backend Registry
================

Builds the tag -> backend registry from settings and wires it into a
ProviderGateway.
"""

from collections.abc import Mapping
from typing import Dict, Iterator, Optional

import httpx

from helpdesk_retrieval.config import Settings, BackendName, settings as default_settings
from helpdesk_retrieval.gateway.application import IMetricsExporter, ProviderGateway
from helpdesk_retrieval.gateway.infrastructure.backends import (
    BaseBackend,
    GroqBackend,
    MockBackend,
    OllamaBackend,
    OpenAIBackend,
    YandexCloudBackend,
    ZAIBackend,
)
from helpdesk_retrieval.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class BackendRegistry(Mapping):
    """
    Read-only mapping of backend tag to backend instance.

    Also owns the backends' lifecycle (startup probes, closing clients).
    """

    def __init__(self):
        self._backends: Dict[str, BaseBackend] = {}

    def register(self, backend: BaseBackend) -> None:
        self._backends[backend.name] = backend

    def __getitem__(self, name: str) -> BaseBackend:
        return self._backends[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._backends)

    def __len__(self) -> int:
        return len(self._backends)

    async def startup(self) -> None:
        """Run every backend's startup hook (e.g. Ollama reachability probe)."""
        for backend in self._backends.values():
            await backend.startup()

    async def aclose(self) -> None:
        for name, backend in self._backends.items():
            try:
                await backend.aclose()
            except Exception as e:
                logger.warning("Failed to close backend", extra={"backend": name, "error": str(e)})


def build_backend_registry(
    config: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> BackendRegistry:
    """
    Register every known backend variant.

    Backends are always registered; unconfigured ones simply report
    ``is_configured == False`` and are skipped by the gateway. The mock
    backend is only registered when ``mock_llm`` is on.
    """
    config = config or default_settings
    registry = BackendRegistry()

    registry.register(YandexCloudBackend(
        api_key=config.yandex_cloud_api_key,
        folder_id=config.yandex_cloud_folder_id,
        model=config.yandex_cloud_model,
        embedding_model=config.yandex_cloud_embedding_model,
        base_url=config.yandex_cloud_base_url,
        transport=transport,
        dimension=config.embedding_dimension
    ))
    registry.register(OllamaBackend(
        base_url=config.ollama_base_url,
        model=config.ollama_model,
        embedding_model=config.ollama_embedding_model,
        probe_timeout=config.ollama_probe_timeout_seconds,
        transport=transport,
        dimension=config.embedding_dimension
    ))
    registry.register(GroqBackend(
        api_key=config.groq_api_key,
        model=config.groq_model
    ))
    registry.register(OpenAIBackend(
        api_key=config.openai_api_key,
        model=config.openai_model,
        embedding_model=config.openai_embedding_model,
        dimension=config.embedding_dimension
    ))
    registry.register(ZAIBackend(
        api_key=config.zai_api_key,
        model=config.zai_model,
        embedding_model=config.zai_embedding_model,
        dimension=config.embedding_dimension
    ))
    if config.mock_llm:
        registry.register(MockBackend(dimension=config.embedding_dimension))

    return registry


def create_provider_gateway(
    registry: BackendRegistry,
    config: Optional[Settings] = None,
    metrics_exporter: Optional[IMetricsExporter] = None
) -> ProviderGateway:
    """
    Create the gateway from settings priorities.

    With ``mock_llm`` on, the mock backend is the only candidate so no
    external API is ever called.
    """
    config = config or default_settings
    if config.mock_llm:
        generation_priority = embedding_priority = BackendName.MOCK
    else:
        generation_priority = config.ai_llm_priority
        embedding_priority = config.ai_embedding_priority

    gateway = ProviderGateway(
        registry,
        generation_priority=generation_priority,
        embedding_priority=embedding_priority,
        metrics_exporter=metrics_exporter
    )
    gateway.log_status()
    return gateway
