"""Tests for backend adapters and the backend registry."""

from __future__ import annotations

import json

import httpx
import pytest

from helpdesk_retrieval.config import Settings
from helpdesk_retrieval.core import BackendTransportException, LLMException
from helpdesk_retrieval.gateway.domain import ChatMessage, GenerationOptions
from helpdesk_retrieval.gateway.infrastructure import (
    GroqBackend,
    MockBackend,
    OllamaBackend,
    YandexCloudBackend,
    build_backend_registry,
    create_provider_gateway,
)

MESSAGES = [
    ChatMessage(role="system", content="You are a helpdesk assistant."),
    ChatMessage(role="user", content="Pump is leaking"),
]


def _ndjson(*items: dict) -> bytes:
    return "".join(json.dumps(item) + "\n" for item in items).encode()


# ========== Ollama ==========

def _ollama(handler, dimension: int = 4) -> OllamaBackend:
    return OllamaBackend(
        base_url="http://ollama.test",
        model="qwen2.5:14b",
        embedding_model="nomic-embed-text",
        transport=httpx.MockTransport(handler),
        dimension=dimension
    )


def _ollama_tags(request: httpx.Request):
    if request.url.path == "/api/tags":
        return httpx.Response(200, json={"models": [{"name": "qwen2.5:14b"}]})
    return None


@pytest.mark.asyncio
async def test_ollama_is_unusable_until_probe_succeeds():
    def handler(request: httpx.Request) -> httpx.Response:
        tags = _ollama_tags(request)
        return tags if tags is not None else httpx.Response(404)

    backend = _ollama(handler)

    assert backend.is_configured is False
    await backend.startup()
    assert backend.is_configured is True
    await backend.aclose()


@pytest.mark.asyncio
async def test_ollama_probe_failure_keeps_backend_unusable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = _ollama(handler)
    assert await backend.check_availability() is False
    assert backend.is_configured is False

    with pytest.raises(LLMException):
        await backend.generate(MESSAGES, GenerationOptions())
    await backend.aclose()


@pytest.mark.asyncio
async def test_ollama_generate_wire_format():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        tags = _ollama_tags(request)
        if tags is not None:
            return tags
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={
            "model": "qwen2.5:14b",
            "message": {"role": "assistant", "content": "{\"category\": \"other\"}"},
            "prompt_eval_count": 21,
            "eval_count": 7,
            "done": True,
        })

    backend = _ollama(handler)
    await backend.startup()
    result = await backend.generate(
        MESSAGES, GenerationOptions(temperature=0.1, max_tokens=200, json_mode=True)
    )

    assert result.text == "{\"category\": \"other\"}"
    assert (result.tokens_in, result.tokens_out) == (21, 7)
    assert seen["payload"]["format"] == "json"
    assert seen["payload"]["stream"] is False
    assert seen["payload"]["options"] == {"temperature": 0.1, "num_predict": 200}
    assert seen["payload"]["messages"][1] == {"role": "user", "content": "Pump is leaking"}
    await backend.aclose()


@pytest.mark.asyncio
async def test_ollama_connection_loss_marks_backend_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        tags = _ollama_tags(request)
        if tags is not None:
            return tags
        raise httpx.ConnectError("connection refused", request=request)

    backend = _ollama(handler)
    await backend.startup()

    with pytest.raises(BackendTransportException):
        await backend.generate(MESSAGES, GenerationOptions())
    assert backend.is_configured is False
    await backend.aclose()


@pytest.mark.asyncio
async def test_ollama_streams_ndjson_fragments():
    def handler(request: httpx.Request) -> httpx.Response:
        tags = _ollama_tags(request)
        if tags is not None:
            return tags
        return httpx.Response(200, content=_ndjson(
            {"message": {"content": "Hel"}, "done": False},
            {"message": {"content": "lo"}, "done": False},
            {"message": {"content": ""}, "done": True},
        ))

    backend = _ollama(handler)
    await backend.startup()

    fragments = [f async for f in backend.generate_stream(MESSAGES, GenerationOptions())]

    assert fragments == ["Hel", "lo"]
    await backend.aclose()


@pytest.mark.asyncio
async def test_ollama_embedding_is_padded_to_canonical_dimension():
    def handler(request: httpx.Request) -> httpx.Response:
        tags = _ollama_tags(request)
        if tags is not None:
            return tags
        assert json.loads(request.content) == {"model": "nomic-embed-text", "prompt": "pump"}
        return httpx.Response(200, json={"embedding": [1.0, 2.0]})

    backend = _ollama(handler, dimension=4)
    await backend.startup()

    result = await backend.embed("pump")

    assert result.vector == [1.0, 2.0, 0.0, 0.0]
    assert result.model == "nomic-embed-text"
    await backend.aclose()


# ========== Yandex Cloud ==========

def _yandex(handler, dimension: int = 4) -> YandexCloudBackend:
    return YandexCloudBackend(
        api_key="test-key",
        folder_id="b1gfolder",
        model="yandexgpt-lite",
        embedding_model="text-search-query",
        base_url="https://llm.test/foundationModels/v1",
        transport=httpx.MockTransport(handler),
        dimension=dimension
    )


def _alternative(text: str) -> dict:
    return {"result": {"alternatives": [{"message": {"role": "assistant", "text": text}}]}}


@pytest.mark.asyncio
async def test_yandex_generate_wire_format():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["folder"] = request.headers.get("x-folder-id")
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={
            "result": {
                "alternatives": [{"message": {"role": "assistant", "text": "Check the seal"}}],
                "usage": {"inputTextTokens": "12", "completionTokens": "3", "totalTokens": "15"},
                "modelVersion": "23.10.2024",
            }
        })

    backend = _yandex(handler)
    result = await backend.generate(MESSAGES, GenerationOptions(max_tokens=200, json_mode=True))

    assert result.text == "Check the seal"
    assert (result.tokens_in, result.tokens_out) == (12, 3)
    assert result.model == "yandexgpt-lite@23.10.2024"
    assert seen["path"] == "/foundationModels/v1/completion"
    assert seen["auth"] == "Api-Key test-key"
    assert seen["folder"] == "b1gfolder"
    assert seen["payload"]["modelUri"] == "gpt://b1gfolder/yandexgpt-lite"
    assert seen["payload"]["completionOptions"]["maxTokens"] == "200"
    assert seen["payload"]["jsonObject"] is True
    assert seen["payload"]["messages"][0] == {"role": "system", "text": "You are a helpdesk assistant."}
    await backend.aclose()


@pytest.mark.asyncio
async def test_yandex_stream_emits_snapshot_differences():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_ndjson(
            _alternative("Hel"),
            _alternative("Hello"),
            _alternative("Hello"),
            _alternative("Hello world"),
        ))

    backend = _yandex(handler)

    fragments = [f async for f in backend.generate_stream(MESSAGES, GenerationOptions())]

    assert fragments == ["Hel", "lo", " world"]
    await backend.aclose()


@pytest.mark.asyncio
async def test_yandex_embedding_is_truncated_to_canonical_dimension():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"embedding": [0.5, 0.25, 0.125], "numTokens": "4"})

    backend = _yandex(handler, dimension=2)
    result = await backend.embed("pump leaks")

    assert result.vector == [0.5, 0.25]
    assert result.tokens_in == 4
    assert seen["path"].endswith("/textEmbedding")
    assert seen["payload"] == {"modelUri": "emb://b1gfolder/text-search-query", "text": "pump leaks"}
    await backend.aclose()


@pytest.mark.asyncio
async def test_yandex_http_error_becomes_backend_error():
    backend = _yandex(lambda request: httpx.Response(429, text="rate limited"))

    with pytest.raises(LLMException) as exc_info:
        await backend.generate(MESSAGES, GenerationOptions())

    assert "HTTP 429" in str(exc_info.value)
    assert exc_info.value.service_name == "yandex"
    await backend.aclose()


def test_yandex_requires_key_and_folder():
    backend = YandexCloudBackend(api_key="", folder_id="b1gfolder")
    assert backend.is_configured is False


# ========== Groq (OpenAI-compatible) ==========

def _groq(handler) -> GroqBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GroqBackend(api_key="gsk-test", model="llama-3.3-70b-versatile", http_client=client)


@pytest.mark.asyncio
async def test_groq_generate_through_openai_sdk():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": 1700000000,
            "model": "llama-3.3-70b-versatile",
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": "Replace the gasket"},
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": 30, "completion_tokens": 5, "total_tokens": 35},
        })

    backend = _groq(handler)
    result = await backend.generate(MESSAGES, GenerationOptions(json_mode=True))

    assert result.text == "Replace the gasket"
    assert (result.tokens_in, result.tokens_out) == (30, 5)
    assert seen["url"] == "https://api.groq.com/openai/v1/chat/completions"
    assert seen["payload"]["response_format"] == {"type": "json_object"}
    await backend.aclose()


@pytest.mark.asyncio
async def test_groq_connection_error_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = _groq(handler)

    with pytest.raises(BackendTransportException):
        await backend.generate(MESSAGES, GenerationOptions())
    await backend.aclose()


@pytest.mark.asyncio
async def test_groq_has_no_embeddings():
    backend = _groq(lambda request: httpx.Response(500))

    assert backend.supports_embedding is False
    assert backend.is_free is True
    with pytest.raises(LLMException):
        await backend.embed("text")
    await backend.aclose()


# ========== Mock ==========

@pytest.mark.asyncio
async def test_mock_backend_is_deterministic():
    backend = MockBackend(dimension=8)

    first = await backend.embed("same text")
    second = await backend.embed("same text")
    other = await backend.embed("other text")

    assert first.vector == second.vector
    assert first.vector != other.vector
    assert len(first.vector) == 8

    result = await backend.generate(MESSAGES, GenerationOptions(json_mode=True))
    assert json.loads(result.text)["category"] == "other"

    streamed = [f async for f in backend.generate_stream(MESSAGES, GenerationOptions())]
    plain = await backend.generate(MESSAGES, GenerationOptions())
    assert "".join(streamed) == plain.text


# ========== Registry ==========

@pytest.mark.asyncio
async def test_mock_mode_routes_everything_to_mock_backend():
    config = Settings(mock_llm=True, embedding_dimension=8)
    registry = build_backend_registry(config)

    gateway = create_provider_gateway(registry, config)

    assert set(registry) == {"yandex", "ollama", "groq", "openai", "zai", "mock"}
    assert gateway.generation_priority == ["mock"]
    assert gateway.embedding_priority == ["mock"]
    result = await gateway.embed("pump")
    assert result.backend_name == "mock"
    assert len(result.vector) == 8
    await registry.aclose()


def test_registry_without_credentials_has_no_usable_backend():
    config = Settings(mock_llm=False)
    registry = build_backend_registry(config)

    gateway = create_provider_gateway(registry, config)

    assert "mock" not in registry
    assert gateway.is_generation_available() is False
    assert gateway.is_embedding_available() is False
