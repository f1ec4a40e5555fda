"""
Backend Adapters
================

Concrete generation/embedding backends for the provider gateway.

Each adapter owns its wire format and converts it into GenerationResult /
EmbeddingResult. Embedding vectors are normalized to the canonical
dimension before they leave the adapter.

Variants:
- YandexCloudBackend: YandexGPT over REST (httpx), full-text streaming
- OllamaBackend: self-hosted models over REST (httpx), startup probe
- GroqBackend / OpenAIBackend: OpenAI-compatible SDK (AsyncOpenAI)
- ZAIBackend: Z.AI GLM SDK (synchronous client run in a worker thread)
- MockBackend: deterministic, no network
"""

import asyncio
import hashlib
import json
import random
from typing import Any, AsyncIterator, List, Optional

import httpx
import openai
from openai import AsyncOpenAI
from zai import ZaiClient

from helpdesk_retrieval.config import settings, BackendName
from helpdesk_retrieval.core import BackendTransportException, LLMException
from helpdesk_retrieval.gateway.application import ILLMBackend
from helpdesk_retrieval.gateway.domain import (
    ChatMessage,
    EmbeddingResult,
    GenerationOptions,
    GenerationResult,
    estimate_tokens,
    normalize_dimension,
)
from helpdesk_retrieval.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class BaseBackend(ILLMBackend):
    """
    Shared behaviour for all backend variants.

    Subclasses implement ``generate`` and, when they support embeddings,
    ``_embed`` returning the backend's native vector.
    """

    def __init__(self, dimension: Optional[int] = None):
        self._dimension = dimension or settings.embedding_dimension

    @property
    def models(self) -> dict:
        """Configured model names per capability."""
        result = {}
        if self.supports_generation and getattr(self, "_model", None):
            result["generation"] = self._model
        if self.supports_embedding and getattr(self, "_embedding_model", None):
            result["embedding"] = self._embedding_model
        return result

    async def startup(self) -> None:
        """Hook run once during application startup."""

    async def aclose(self) -> None:
        """Release network resources."""

    def _temperature(self, options: GenerationOptions) -> float:
        if options.temperature is None:
            return settings.llm_temperature
        return options.temperature

    def _max_tokens(self, options: GenerationOptions) -> int:
        if options.max_tokens is None:
            return settings.llm_max_tokens
        return options.max_tokens

    def _error(self, message: str, details: Optional[dict] = None) -> LLMException:
        return LLMException(message, details, backend=self.name)

    def generate_stream(self, messages: List[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        """Backends without native streaming yield the whole completion once."""
        return self._single_fragment(messages, options)

    async def _single_fragment(self, messages: List[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        result = await self.generate(messages, options)
        if result.text:
            yield result.text

    async def embed(self, text: str) -> EmbeddingResult:
        if not self.supports_embedding:
            raise self._error("embeddings not supported")
        result = await self._embed(text)
        native_dimension = len(result.vector)
        result.vector = normalize_dimension(result.vector, self._dimension)
        if native_dimension != self._dimension:
            logger.debug(
                "Embedding dimension normalized",
                extra={"backend": self.name, "native": native_dimension, "target": self._dimension}
            )
        return result

    async def _embed(self, text: str) -> EmbeddingResult:
        raise self._error("embeddings not supported")


# ========== httpx-based backends ==========

class HttpBackend(BaseBackend):
    """Backend talking JSON over HTTP with an httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        dimension: Optional[int] = None
    ):
        super().__init__(dimension)
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout or settings.llm_request_timeout_seconds,
            transport=transport
        )

    def _on_transport_error(self, error: httpx.TransportError) -> None:
        """Hook for backends that track reachability."""

    def _transport_error(self, error: httpx.TransportError) -> BackendTransportException:
        self._on_transport_error(error)
        return BackendTransportException(
            f"transport error: {error!r}", {"error_type": type(error).__name__}, backend=self.name
        )

    def _status_error(self, status_code: int, body: str) -> LLMException:
        return self._error(f"HTTP {status_code} - {body[:300]}", {"status_code": status_code})

    async def _post_json(self, path: str, payload: dict) -> dict:
        try:
            response = await self._http.post(path, json=payload)
        except httpx.TransportError as e:
            raise self._transport_error(e) from e

        if response.is_error:
            raise self._status_error(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as e:
            raise self._error("response is not valid JSON") from e

    async def _stream_lines(self, path: str, payload: dict) -> AsyncIterator[str]:
        """POST and yield non-empty response lines as they arrive."""
        try:
            async with self._http.stream("POST", path, json=payload) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._status_error(response.status_code, body)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if line:
                        yield line
        except httpx.TransportError as e:
            raise self._transport_error(e) from e

    async def aclose(self) -> None:
        await self._http.aclose()


class YandexCloudBackend(HttpBackend):
    """
    Yandex Cloud Foundation Models (YandexGPT).

    Auth is an ``Api-Key`` header plus the folder id. Streaming responses
    are line-delimited JSON where every line carries the full text so far,
    so fragments are produced by diffing against the previous snapshot.
    """

    name = BackendName.YANDEX
    supports_generation = True
    supports_embedding = True
    is_free = False

    def __init__(
        self,
        api_key: Optional[str] = None,
        folder_id: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        dimension: Optional[int] = None
    ):
        self._api_key = api_key if api_key is not None else settings.yandex_cloud_api_key
        self._folder_id = folder_id if folder_id is not None else settings.yandex_cloud_folder_id
        self._model = model or settings.yandex_cloud_model
        self._embedding_model = embedding_model or settings.yandex_cloud_embedding_model
        headers = {}
        if self._api_key and self._folder_id:
            headers = {
                "Authorization": f"Api-Key {self._api_key}",
                "x-folder-id": self._folder_id,
            }
        super().__init__(
            base_url or settings.yandex_cloud_base_url,
            headers=headers,
            transport=transport,
            dimension=dimension
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self._folder_id)

    @property
    def model_uri(self) -> str:
        return f"gpt://{self._folder_id}/{self._model}"

    @property
    def embedding_model_uri(self) -> str:
        return f"emb://{self._folder_id}/{self._embedding_model}"

    def _payload(self, messages: List[ChatMessage], options: GenerationOptions, stream: bool) -> dict:
        payload = {
            "modelUri": self.model_uri,
            "completionOptions": {
                "stream": stream,
                "temperature": self._temperature(options),
                "maxTokens": str(self._max_tokens(options)),
            },
            "messages": [{"role": m.role, "text": m.content} for m in messages],
        }
        if options.json_mode:
            payload["jsonObject"] = True
        return payload

    @staticmethod
    def _alternative_text(data: dict) -> str:
        result = data.get("result", data)
        alternatives = result.get("alternatives") or []
        if not alternatives:
            return ""
        return (alternatives[0].get("message") or {}).get("text") or ""

    async def generate(self, messages: List[ChatMessage], options: GenerationOptions) -> GenerationResult:
        if not self.is_configured:
            raise self._error("not configured")

        data = await self._post_json("/completion", self._payload(messages, options, stream=False))
        result = data.get("result", data)
        usage = result.get("usage") or {}
        model_version = result.get("modelVersion")

        return GenerationResult(
            text=self._alternative_text(data),
            tokens_in=int(usage.get("inputTextTokens") or 0),
            tokens_out=int(usage.get("completionTokens") or 0),
            model=f"{self._model}@{model_version}" if model_version else self._model,
        )

    async def generate_stream(self, messages: List[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        if not self.is_configured:
            raise self._error("not configured")

        previous = ""
        async for line in self._stream_lines("/completion", self._payload(messages, options, stream=True)):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed stream line", extra={"backend": self.name})
                continue
            current = self._alternative_text(data)
            if len(current) > len(previous) and current.startswith(previous):
                delta = current[len(previous):]
                previous = current
                yield delta
            elif current and not current.startswith(previous):
                # snapshot rewrote earlier text; emit only what is new in length
                delta = current[len(previous):]
                previous = current
                if delta:
                    yield delta

    async def _embed(self, text: str) -> EmbeddingResult:
        if not self.is_configured:
            raise self._error("not configured")

        data = await self._post_json(
            "/textEmbedding",
            {"modelUri": self.embedding_model_uri, "text": text}
        )
        vector = data.get("embedding")
        if not vector:
            raise self._error("embedding missing in response")

        return EmbeddingResult(
            vector=vector,
            tokens_in=int(data.get("numTokens") or estimate_tokens(text)),
            model=self._embedding_model,
        )


class OllamaBackend(HttpBackend):
    """
    Self-hosted Ollama server.

    Usability comes from an active probe of ``/api/tags`` at startup and is
    cached. A connection-level failure during a call flips it back off.
    """

    name = BackendName.OLLAMA
    supports_generation = True
    supports_embedding = True
    is_free = True

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        probe_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        dimension: Optional[int] = None
    ):
        self._base_url = base_url or settings.ollama_base_url
        self._model = model or settings.ollama_model
        self._embedding_model = embedding_model or settings.ollama_embedding_model
        self._probe_timeout = probe_timeout or settings.ollama_probe_timeout_seconds
        self._available = False
        super().__init__(self._base_url, transport=transport, dimension=dimension)

    @property
    def is_configured(self) -> bool:
        return self._available

    async def startup(self) -> None:
        await self.check_availability()

    async def check_availability(self) -> bool:
        """Probe the server once and cache the result."""
        try:
            response = await self._http.get("/api/tags", timeout=self._probe_timeout)
        except httpx.HTTPError as e:
            self._available = False
            logger.warning(
                "Ollama not reachable",
                extra={"base_url": self._base_url, "error": repr(e)}
            )
            return False

        if response.status_code != 200:
            self._available = False
            logger.warning(
                "Ollama probe failed",
                extra={"base_url": self._base_url, "status_code": response.status_code}
            )
            return False

        try:
            models = [m.get("name") for m in response.json().get("models", [])]
        except ValueError:
            models = []
        self._available = True
        logger.info(
            "Ollama available",
            extra={"base_url": self._base_url, "models": models[:5]}
        )
        return True

    def _on_transport_error(self, error: httpx.TransportError) -> None:
        if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout)):
            self._available = False
            logger.warning(
                "Ollama connection lost, marking unavailable",
                extra={"base_url": self._base_url, "error": repr(error)}
            )

    def _payload(self, messages: List[ChatMessage], options: GenerationOptions, stream: bool) -> dict:
        payload = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": stream,
            "options": {
                "temperature": self._temperature(options),
                "num_predict": self._max_tokens(options),
            },
        }
        if options.json_mode:
            payload["format"] = "json"
        return payload

    async def generate(self, messages: List[ChatMessage], options: GenerationOptions) -> GenerationResult:
        if not self._available:
            raise self._error("not available")

        data = await self._post_json("/api/chat", self._payload(messages, options, stream=False))
        return GenerationResult(
            text=(data.get("message") or {}).get("content") or "",
            tokens_in=int(data.get("prompt_eval_count") or 0),
            tokens_out=int(data.get("eval_count") or 0),
            model=data.get("model") or self._model,
        )

    async def generate_stream(self, messages: List[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        if not self._available:
            raise self._error("not available")

        async for line in self._stream_lines("/api/chat", self._payload(messages, options, stream=True)):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed stream line", extra={"backend": self.name})
                continue
            if data.get("error"):
                raise self._error(str(data["error"]))
            content = (data.get("message") or {}).get("content")
            if content:
                yield content
            if data.get("done"):
                return

    async def _embed(self, text: str) -> EmbeddingResult:
        if not self._available:
            raise self._error("not available")

        data = await self._post_json(
            "/api/embeddings",
            {"model": self._embedding_model, "prompt": text}
        )
        vector = data.get("embedding")
        if not vector:
            raise self._error("embedding missing in response")

        return EmbeddingResult(
            vector=vector,
            tokens_in=estimate_tokens(text),
            model=self._embedding_model,
        )


# ========== OpenAI-compatible SDK backends ==========

class OpenAICompatibleBackend(BaseBackend):
    """
    Backend driven through the ``openai`` SDK.

    SDK retries are disabled: the gateway's fallback is the retry policy.
    """

    base_url: Optional[str] = None

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        embedding_model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        dimension: Optional[int] = None
    ):
        super().__init__(dimension)
        self._model = model
        self._embedding_model = embedding_model
        self._client: Optional[AsyncOpenAI] = None
        if api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_url,
                timeout=settings.llm_request_timeout_seconds,
                max_retries=0,
                http_client=http_client
            )

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    def _request(self, messages: List[ChatMessage], options: GenerationOptions) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": self._temperature(options),
            "max_tokens": self._max_tokens(options),
        }
        if options.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _sdk_error(self, error: openai.APIError) -> LLMException:
        if isinstance(error, openai.APIConnectionError):
            return BackendTransportException(
                f"transport error: {error}", {"error_type": type(error).__name__}, backend=self.name
            )
        status_code = getattr(error, "status_code", None)
        return self._error(str(error), {"status_code": status_code})

    async def generate(self, messages: List[ChatMessage], options: GenerationOptions) -> GenerationResult:
        if self._client is None:
            raise self._error("API key not configured")

        try:
            response = await self._client.chat.completions.create(**self._request(messages, options))
        except openai.APIError as e:
            raise self._sdk_error(e) from e

        text = (response.choices[0].message.content or "") if response.choices else ""
        usage = response.usage
        return GenerationResult(
            text=text,
            tokens_in=usage.prompt_tokens if usage else estimate_tokens(str(messages)),
            tokens_out=usage.completion_tokens if usage else estimate_tokens(text),
            model=response.model or self._model,
        )

    async def generate_stream(self, messages: List[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        if self._client is None:
            raise self._error("API key not configured")

        try:
            stream = await self._client.chat.completions.create(
                stream=True, **self._request(messages, options)
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except openai.APIError as e:
            raise self._sdk_error(e) from e

    async def _embed(self, text: str) -> EmbeddingResult:
        if self._client is None:
            raise self._error("API key not configured")

        kwargs: dict = {"model": self._embedding_model, "input": text}
        if self._embedding_model and self._embedding_model.startswith("text-embedding-3"):
            # v3 models shorten natively, which beats truncation
            kwargs["dimensions"] = self._dimension
        try:
            response = await self._client.embeddings.create(**kwargs)
        except openai.APIError as e:
            raise self._sdk_error(e) from e

        usage = getattr(response, "usage", None)
        return EmbeddingResult(
            vector=list(response.data[0].embedding),
            tokens_in=usage.prompt_tokens if usage else estimate_tokens(text),
            model=self._embedding_model,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


class GroqBackend(OpenAICompatibleBackend):
    """
    Groq (OpenAI-compatible, fast Llama inference).

    Groq has no embedding API.
    """

    name = BackendName.GROQ
    supports_generation = True
    supports_embedding = False
    is_free = True
    base_url = "https://api.groq.com/openai/v1"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(
            api_key if api_key is not None else settings.groq_api_key,
            model or settings.groq_model,
            http_client=http_client
        )


class OpenAIBackend(OpenAICompatibleBackend):
    """OpenAI GPT and text-embedding models."""

    name = BackendName.OPENAI
    supports_generation = True
    supports_embedding = True
    is_free = False

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        dimension: Optional[int] = None
    ):
        super().__init__(
            api_key if api_key is not None else settings.openai_api_key,
            model or settings.openai_model,
            embedding_model or settings.openai_embedding_model,
            http_client=http_client,
            dimension=dimension
        )


# ========== Z.AI SDK backend ==========

class ZAIBackend(BaseBackend):
    """
    Z.AI GLM models through the synchronous ``zai`` SDK.

    SDK calls run in a worker thread to keep the event loop free.
    No native streaming: the completion is yielded as one fragment.
    """

    name = BackendName.ZAI
    supports_generation = True
    supports_embedding = True
    is_free = False

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        dimension: Optional[int] = None
    ):
        super().__init__(dimension)
        api_key = api_key if api_key is not None else settings.zai_api_key
        self._client = client
        if self._client is None and api_key:
            self._client = ZaiClient(api_key=api_key)
        self._model = model or settings.zai_model
        self._embedding_model = embedding_model or settings.zai_embedding_model

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def generate(self, messages: List[ChatMessage], options: GenerationOptions) -> GenerationResult:
        if self._client is None:
            raise self._error("API key not configured")

        payload = [{"role": m.role, "content": m.content} for m in messages]
        try:
            response = await asyncio.to_thread(
                self._client.chat.completions.create,
                model=self._model,
                messages=payload,
                temperature=self._temperature(options),
                max_tokens=self._max_tokens(options),
            )
        except Exception as e:
            raise self._error(f"chat completion failed: {e}") from e

        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        return GenerationResult(
            text=text,
            tokens_in=getattr(usage, "prompt_tokens", None) or estimate_tokens(str(payload)),
            tokens_out=getattr(usage, "completion_tokens", None) or estimate_tokens(text),
            model=self._model,
        )

    async def _embed(self, text: str) -> EmbeddingResult:
        if self._client is None:
            raise self._error("API key not configured")

        try:
            response = await asyncio.to_thread(
                self._client.embeddings.create,
                model=self._embedding_model,
                input=text,
            )
        except Exception as e:
            raise self._error(f"embedding generation failed: {e}") from e

        return EmbeddingResult(
            vector=list(response.data[0].embedding),
            tokens_in=estimate_tokens(text),
            model=self._embedding_model,
        )


# ========== Mock backend ==========

class MockBackend(BaseBackend):
    """
    Deterministic backend for local runs and tests.

    Returns predictable responses without calling external APIs.
    """

    name = BackendName.MOCK
    supports_generation = True
    supports_embedding = True
    is_free = True

    @property
    def is_configured(self) -> bool:
        return True

    async def generate(self, messages: List[ChatMessage], options: GenerationOptions) -> GenerationResult:
        if options.json_mode:
            text = json.dumps({
                "category": "other",
                "priority": "medium",
                "skills": [],
                "confidence": 0.5,
                "reasoning": "Mock classification",
            })
        else:
            text = "This is a mock response for testing purposes."

        prompt = " ".join(m.content for m in messages)
        return GenerationResult(
            text=text,
            tokens_in=estimate_tokens(prompt),
            tokens_out=estimate_tokens(text),
            model="mock-model",
        )

    async def generate_stream(self, messages: List[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        result = await self.generate(messages, options)
        words = result.text.split(" ")
        for i, word in enumerate(words):
            yield word if i == len(words) - 1 else word + " "

    async def _embed(self, text: str) -> EmbeddingResult:
        # Same text always maps to the same vector
        seed = int(hashlib.sha256(text.encode()).hexdigest()[:8], 16)
        rng = random.Random(seed)
        return EmbeddingResult(
            vector=[rng.uniform(-1, 1) for _ in range(self._dimension)],
            tokens_in=estimate_tokens(text),
            model="mock-embedding",
        )
