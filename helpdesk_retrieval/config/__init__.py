"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

import re

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="helpdesk-retrieval", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="PostgreSQL connection URL (async, pgvector enabled)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Provider Gateway ==========
    ai_llm_priority: str = Field(
        default="yandex,ollama,groq,openai",
        description="Comma-separated backend order for text generation"
    )
    ai_embedding_priority: str = Field(
        default="yandex,ollama,openai",
        description="Comma-separated backend order for embeddings"
    )
    embedding_dimension: int = Field(
        default=256,
        description="Canonical embedding dimension stored in knowledge_chunks",
        ge=8
    )
    llm_request_timeout_seconds: float = Field(
        default=60.0,
        description="Per-call deadline for backend HTTP requests",
        ge=1.0
    )
    llm_temperature: float = Field(
        default=0.7,
        description="Default sampling temperature",
        ge=0.0,
        le=2.0
    )
    llm_max_tokens: int = Field(
        default=1000,
        description="Default max tokens for generation",
        ge=1,
        le=8000
    )
    mock_llm: bool = Field(
        default=False,
        description="Register the deterministic mock backend (no API calls)"
    )

    # ========== Yandex Cloud Foundation Models ==========
    yandex_cloud_api_key: Optional[str] = Field(default=None, description="Yandex Cloud API key")
    yandex_cloud_folder_id: Optional[str] = Field(default=None, description="Yandex Cloud folder ID")
    yandex_cloud_model: str = Field(
        default="yandexgpt-lite/latest",
        description="YandexGPT model path inside the folder"
    )
    yandex_cloud_embedding_model: str = Field(
        default="text-search-query/latest",
        description="Yandex text embedding model path inside the folder"
    )
    yandex_cloud_base_url: str = Field(
        default="https://llm.api.cloud.yandex.net/foundationModels/v1",
        description="Yandex Foundation Models REST base URL"
    )

    # ========== Ollama ==========
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama server URL")
    ollama_model: str = Field(default="qwen2.5:14b", description="Ollama chat model")
    ollama_embedding_model: str = Field(default="nomic-embed-text", description="Ollama embedding model")
    ollama_probe_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for the startup reachability probe",
        ge=0.1
    )

    # ========== Groq ==========
    groq_api_key: Optional[str] = Field(default=None, description="Groq API key")
    groq_model: str = Field(default="llama-3.3-70b-versatile", description="Groq chat model")

    # ========== OpenAI ==========
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI chat model")
    openai_embedding_model: str = Field(
        default="text-embedding-3-small",
        description="OpenAI embedding model"
    )

    # ========== Z.AI SDK (GLM) ==========
    zai_api_key: Optional[str] = Field(default=None, description="Z.AI API key for GLM")
    zai_model: str = Field(default="glm-4.7", description="GLM model for generation")
    zai_embedding_model: str = Field(default="embedding-2", description="Z.AI embedding model")

    # ========== Knowledge Store ==========
    knowledge_cache_ttl_seconds: float = Field(
        default=300.0,
        description="Query embedding cache TTL",
        ge=0
    )
    knowledge_cache_max_size: int = Field(
        default=200,
        description="Query embedding cache capacity",
        ge=1
    )
    knowledge_search_limit: int = Field(default=10, description="Default search limit", ge=1, le=100)
    knowledge_min_similarity: float = Field(
        default=0.7,
        description="Default minimum similarity for search",
        ge=0.0,
        le=1.0
    )
    knowledge_rerank_enabled: bool = Field(
        default=False,
        description="Apply heuristic reranking to search candidates"
    )
    knowledge_text_search_config: str = Field(
        default="simple",
        description="PostgreSQL text search configuration for the lexical part of hybrid search"
    )

    # ========== Indexing Pipeline ==========
    indexer_pipeline_id: str = Field(
        default="legacy_requests",
        description="Key of the persisted progress row"
    )
    indexer_batch_size: int = Field(default=10, description="Records per batch", ge=1)
    indexer_embedding_delay_ms: int = Field(
        default=150,
        description="Pause between embedding calls",
        ge=0
    )
    indexer_save_every_batches: int = Field(
        default=10,
        description="Persist progress every N batches",
        ge=1
    )
    indexer_resume_on_startup: bool = Field(
        default=True,
        description="Schedule an automatic resume of an incomplete run"
    )
    indexer_resume_delay_seconds: int = Field(
        default=30,
        description="Delay before the startup resume job fires",
        ge=0
    )
    chunk_size_tokens: int = Field(default=512, description="Target chunk size in tokens", ge=16)
    chunk_overlap_tokens: int = Field(default=50, description="Overlap between chunks in tokens", ge=0)
    chars_per_token: int = Field(default=4, description="Token estimate for chunk sizing", ge=1)
    legacy_base_url: str = Field(
        default="https://crm.example.com/crm",
        description="Legacy CRM base URL used for backlinks in chunk metadata"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-ap-south-1.grafana.net)"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("knowledge_text_search_config")
    @classmethod
    def validate_text_search_config(cls, v: str) -> str:
        """Config name is interpolated into DDL, so only plain identifiers."""
        if not re.fullmatch(r"[a-z_]+", v):
            raise ValueError("knowledge_text_search_config must be a lowercase identifier")
        return v

    @field_validator("chunk_overlap_tokens")
    @classmethod
    def validate_overlap(cls, v: int, info) -> int:
        """Overlap must stay below the chunk size."""
        size = info.data.get("chunk_size_tokens")
        if size is not None and v >= size:
            raise ValueError("chunk_overlap_tokens must be smaller than chunk_size_tokens")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class BackendName(str):
    """Tags of the registered generation/embedding backends."""
    YANDEX = "yandex"
    OLLAMA = "ollama"
    GROQ = "groq"
    OPENAI = "openai"
    ZAI = "zai"
    MOCK = "mock"


class SourceType(str):
    """Origin of a knowledge chunk."""
    ENTITY = "entity"
    COMMENT = "comment"
    DOCUMENT = "document"
    FAQ = "faq"
    LEGACY_REQUEST = "legacy_request"


class UsageOperation(str):
    """Billable operations recorded in ai_usage_logs."""
    EMBED = "embed"
    SEARCH = "search"


# ========== Lists for validation ==========

KNOWN_BACKENDS = [
    BackendName.YANDEX, BackendName.OLLAMA, BackendName.GROQ,
    BackendName.OPENAI, BackendName.ZAI, BackendName.MOCK
]
VALID_SOURCE_TYPES = [
    SourceType.ENTITY, SourceType.COMMENT, SourceType.DOCUMENT,
    SourceType.FAQ, SourceType.LEGACY_REQUEST
]
