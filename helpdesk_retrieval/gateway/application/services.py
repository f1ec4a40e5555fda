"""
Gateway Application Services
============================

ProviderGateway: one fallback-aware entry point over every registered
generation/embedding backend.

Selection walks the capability-specific priority list, skips backends that
are unusable or lack the capability, and falls through to the next candidate
on any failure. A failure never disables a backend for future calls; only
the backend itself may flip its own usability flag.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence, Type, Union

from helpdesk_retrieval.config import KNOWN_BACKENDS
from helpdesk_retrieval.core import (
    AllBackendsFailedException,
    ServiceNotConfiguredException,
)
from helpdesk_retrieval.gateway.application.validation import SchemaT, validate_ai_output
from helpdesk_retrieval.gateway.domain import (
    BackendDescriptor,
    EmbeddingResult,
    GenerationOptions,
    GenerationResult,
    MessageLike,
    as_chat_messages,
)
from helpdesk_retrieval.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

GENERATION = "generation"
EMBEDDING = "embedding"


# ========== Backend Interface ==========

class ILLMBackend(ABC):
    """
    Interface every backend variant implements.

    Capability flags are class-level constants; ``is_configured`` is the
    live usability flag.
    """

    name: str = ""
    supports_generation: bool = False
    supports_embedding: bool = False
    is_free: bool = False

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the backend can currently be called."""

    @abstractmethod
    async def generate(self, messages, options: GenerationOptions) -> GenerationResult:
        """Generate a chat completion."""

    @abstractmethod
    def generate_stream(self, messages, options: GenerationOptions) -> AsyncIterator[str]:
        """Stream completion text fragments."""

    @abstractmethod
    async def embed(self, text: str) -> EmbeddingResult:
        """Embed text at the canonical dimension."""


class IMetricsExporter(ABC):
    """Interface for per-call usage metrics."""

    @abstractmethod
    def is_enabled(self) -> bool:
        """Whether exporting is configured."""

    @abstractmethod
    async def export_llm_metrics(
        self,
        backend: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        operation: str = "generate",
        attributes: Optional[Dict[str, str]] = None
    ) -> bool:
        """Export one call's usage."""


def parse_priority(value: Union[str, Iterable[str]], known: Iterable[str]) -> List[str]:
    """
    Parse a priority setting into an ordered list of backend tags.

    Accepts "a, B,c" or a list. Names are trimmed and lower-cased, unknown
    names dropped and duplicates removed keeping the first occurrence.
    """
    items = value.split(",") if isinstance(value, str) else list(value)
    allowed = set(known)
    result: List[str] = []
    for item in items:
        name = item.strip().lower()
        if name in allowed and name not in result:
            result.append(name)
    return result


# ========== Application Services ==========

class ProviderGateway:
    """
    Unified access to generation and embedding backends with fallback.

    Backends are held in a tag -> instance registry; generation and
    embedding each have their own priority list.
    """

    def __init__(
        self,
        backends: Mapping[str, ILLMBackend],
        generation_priority: Union[str, Sequence[str]],
        embedding_priority: Union[str, Sequence[str]],
        metrics_exporter: Optional[IMetricsExporter] = None
    ):
        self._backends: Dict[str, ILLMBackend] = dict(backends)
        known = list(KNOWN_BACKENDS) + [n for n in self._backends if n not in KNOWN_BACKENDS]
        self._generation_priority = [
            n for n in parse_priority(generation_priority, known) if n in self._backends
        ]
        self._embedding_priority = [
            n for n in parse_priority(embedding_priority, known) if n in self._backends
        ]
        self._metrics = metrics_exporter

    @property
    def generation_priority(self) -> List[str]:
        return list(self._generation_priority)

    @property
    def embedding_priority(self) -> List[str]:
        return list(self._embedding_priority)

    # ---------- availability ----------

    def _candidates(self, capability: str) -> List[ILLMBackend]:
        if capability == GENERATION:
            names = self._generation_priority
        else:
            names = self._embedding_priority

        candidates = []
        for name in names:
            backend = self._backends[name]
            supported = (
                backend.supports_generation if capability == GENERATION
                else backend.supports_embedding
            )
            if supported and backend.is_configured:
                candidates.append(backend)
        return candidates

    def is_generation_available(self) -> bool:
        """True if at least one generation backend is usable right now."""
        return bool(self._candidates(GENERATION))

    def is_embedding_available(self) -> bool:
        """True if at least one embedding backend is usable right now."""
        return bool(self._candidates(EMBEDDING))

    def is_available(self) -> bool:
        return self.is_generation_available() or self.is_embedding_available()

    def get_backend(self, name: str) -> Optional[ILLMBackend]:
        return self._backends.get(name)

    def get_backends_info(self) -> List[BackendDescriptor]:
        """Describe every registered backend with its live usability flag."""
        info = []
        for name, backend in self._backends.items():
            info.append(BackendDescriptor(
                name=name,
                supports_generation=backend.supports_generation,
                supports_embedding=backend.supports_embedding,
                is_free=backend.is_free,
                is_configured=backend.is_configured,
                generation_rank=(
                    self._generation_priority.index(name)
                    if name in self._generation_priority else None
                ),
                embedding_rank=(
                    self._embedding_priority.index(name)
                    if name in self._embedding_priority else None
                ),
                models=dict(getattr(backend, "models", {}) or {}),
            ))
        return info

    def log_status(self) -> None:
        available = [n for n, b in self._backends.items() if b.is_configured]
        unavailable = [n for n, b in self._backends.items() if not b.is_configured]
        logger.info(
            "Provider gateway status",
            extra={
                "available_backends": available,
                "unavailable_backends": unavailable,
                "generation_priority": self._generation_priority,
                "embedding_priority": self._embedding_priority,
            }
        )

    # ---------- calls ----------

    def _require(self, capability: str) -> List[ILLMBackend]:
        candidates = self._candidates(capability)
        if not candidates:
            raise ServiceNotConfiguredException(capability)
        return candidates

    def _record_failure(self, capability: str, backend: ILLMBackend, error: Exception, errors: List[str]) -> None:
        reason = getattr(error, "reason", None) or str(error) or type(error).__name__
        errors.append(f"{backend.name}: {reason}")
        logger.warning(
            "Backend call failed, trying next",
            extra={"capability": capability, "backend": backend.name, "error": reason}
        )

    async def _export(self, backend: str, model: str, tokens_in: int, tokens_out: int,
                      latency_ms: int, operation: str) -> None:
        if self._metrics is not None and self._metrics.is_enabled():
            await self._metrics.export_llm_metrics(
                backend=backend,
                model=model,
                prompt_tokens=tokens_in,
                completion_tokens=tokens_out,
                latency_ms=latency_ms,
                operation=operation
            )

    async def generate(
        self,
        messages: Sequence[MessageLike],
        options: Optional[GenerationOptions] = None
    ) -> GenerationResult:
        """
        Generate a completion using the first backend that succeeds.

        Raises:
            ServiceNotConfiguredException: No generation backend is usable
            AllBackendsFailedException: Every usable backend failed
        """
        options = options or GenerationOptions()
        chat = as_chat_messages(messages)
        errors: List[str] = []

        for backend in self._require(GENERATION):
            start = time.perf_counter()
            try:
                result = await backend.generate(chat, options)
            except Exception as e:
                self._record_failure(GENERATION, backend, e, errors)
                continue

            result.backend_name = backend.name
            result.latency_ms = int((time.perf_counter() - start) * 1000)
            await self._export(backend.name, result.model, result.tokens_in,
                               result.tokens_out, result.latency_ms, options.operation)
            return result

        raise AllBackendsFailedException(GENERATION, errors)

    async def generate_structured(
        self,
        messages: Sequence[MessageLike],
        schema: Type[SchemaT],
        options: Optional[GenerationOptions] = None,
        max_retries: int = 1
    ) -> SchemaT:
        """
        Generate JSON output and validate it against a fallback schema.

        Unparseable output is regenerated up to ``max_retries`` times, then
        replaced by the schema defaults. Backend failures raise as in
        ``generate``.
        """
        options = replace(options or GenerationOptions(), json_mode=True)
        result = await self.generate(messages, options)

        async def regenerate() -> str:
            return (await self.generate(messages, options)).text

        return await validate_ai_output(result.text, schema, retry_fn=regenerate, max_retries=max_retries)

    async def generate_stream(
        self,
        messages: Sequence[MessageLike],
        options: Optional[GenerationOptions] = None
    ) -> AsyncIterator[str]:
        """
        Stream completion fragments.

        Fallback happens only while opening the stream, i.e. before the
        first fragment arrives. Once output has started, later errors
        propagate to the caller unchanged.
        """
        options = options or GenerationOptions()
        chat = as_chat_messages(messages)
        errors: List[str] = []

        for backend in self._require(GENERATION):
            stream = backend.generate_stream(chat, options)
            try:
                first = await stream.__anext__()
            except StopAsyncIteration:
                return
            except Exception as e:
                await self._close_stream(stream)
                self._record_failure(GENERATION, backend, e, errors)
                continue

            try:
                yield first
                async for fragment in stream:
                    yield fragment
            finally:
                await self._close_stream(stream)
            return

        raise AllBackendsFailedException(GENERATION, errors)

    @staticmethod
    async def _close_stream(stream: AsyncIterator[str]) -> None:
        # releases the backend's open HTTP response
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Embed text using the first embedding backend that succeeds.

        Raises:
            ServiceNotConfiguredException: No embedding backend is usable
            AllBackendsFailedException: Every usable backend failed
        """
        errors: List[str] = []

        for backend in self._require(EMBEDDING):
            start = time.perf_counter()
            try:
                result = await backend.embed(text)
            except Exception as e:
                self._record_failure(EMBEDDING, backend, e, errors)
                continue

            result.backend_name = backend.name
            result.latency_ms = int((time.perf_counter() - start) * 1000)
            await self._export(backend.name, result.model, result.tokens_in, 0,
                               result.latency_ms, "embed")
            return result

        raise AllBackendsFailedException(EMBEDDING, errors)
