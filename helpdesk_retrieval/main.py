"""
Helpdesk Retrieval - Main Application
=====================================

AI retrieval pipeline for helpdesk knowledge.

Modules:
- Gateway: Provider gateway with priority-ordered backend fallback
- Knowledge: Hybrid vector + lexical search with an embedding cache
- Indexing: Resumable, rate-limited legacy record indexing

Clean Architecture Layers:
- Application: Services and DTOs
- Domain: Entities, chunking, reranking
- Infrastructure: Database, LLM backends, scheduler
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from helpdesk_retrieval.config import settings
from helpdesk_retrieval.core import ApplicationException

# Infrastructure
from helpdesk_retrieval.infrastructure.database import init_database, close_database, create_tables

# Gateway
from helpdesk_retrieval.gateway.infrastructure import build_backend_registry, create_provider_gateway

# Knowledge
from helpdesk_retrieval.knowledge.application import KnowledgeStoreService
from helpdesk_retrieval.knowledge.infrastructure import (
    SQLAlchemyChunkRepository, SQLAlchemyUsageLogRepository
)

# Indexing
from helpdesk_retrieval.indexing.application import ILegacyRecordSource, RagIndexerService
from helpdesk_retrieval.indexing.infrastructure import (
    IndexingResumeScheduler, SQLAlchemyProgressRepository
)

# Shared
from helpdesk_retrieval.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)
from helpdesk_retrieval.shared.infrastructure.logging import setup_logging, get_logger
from helpdesk_retrieval.shared.infrastructure.grafana import init_grafana_exporter

logger = get_logger(__name__)


def _build_lifespan(legacy_source: Optional[ILegacyRecordSource]):

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """
        Application lifespan manager.

        STARTUP:
        1. Setup structured logging
        2. Initialize database and search functions
        3. Initialize Grafana exporter
        4. Register and probe LLM backends
        5. Build gateway and knowledge store
        6. Build indexer and schedule resume (when a legacy source is given)

        SHUTDOWN:
        1. Stop resume scheduler
        2. Close backend clients
        3. Close database connections
        """
        # === STARTUP ===
        setup_logging(settings.log_level, settings.environment)
        logger.info("Starting Helpdesk Retrieval", extra={
            "version": settings.app_version,
            "environment": settings.environment
        })

        logger.info("Initializing database")
        init_database()

        # If the database is not available, the server still starts but
        # search and indexing calls will fail
        logger.info("Creating database tables")
        try:
            await create_tables()
        except Exception as e:
            logger.warning(f"Database not available - running in degraded mode: {e}")
            logger.warning("Please start PostgreSQL with pgvector to enable full functionality")

        grafana_exporter = None
        try:
            if settings.grafana_host and settings.grafana_api_key and settings.grafana_instance_id:
                grafana_exporter = init_grafana_exporter(
                    host=settings.grafana_host,
                    api_key=settings.grafana_api_key,
                    instance_id=settings.grafana_instance_id
                )
                logger.info("Grafana OTLP exporter initialized successfully")
            else:
                logger.info("Grafana OTLP exporter not configured - metrics will not be exported")
        except Exception as e:
            logger.warning(f"Grafana exporter initialization failed: {e}")

        logger.info("Initializing LLM backends")
        registry = build_backend_registry()
        await registry.startup()
        gateway = create_provider_gateway(registry, metrics_exporter=grafana_exporter)

        knowledge_store = KnowledgeStoreService(
            gateway,
            SQLAlchemyChunkRepository(),
            SQLAlchemyUsageLogRepository()
        )

        indexer = None
        resume_scheduler = None
        if legacy_source is not None:
            indexer = RagIndexerService(
                knowledge_store,
                legacy_source,
                SQLAlchemyProgressRepository()
            )
            if settings.indexer_resume_on_startup:
                resume_scheduler = IndexingResumeScheduler(indexer)
                try:
                    await resume_scheduler.start()
                except Exception as e:
                    logger.warning(f"Indexing resume scheduler not started: {e}")
                    resume_scheduler = None
        else:
            logger.info("No legacy source configured - indexing disabled")

        # Store services in app state for dependency injection
        app.state.backend_registry = registry
        app.state.gateway = gateway
        app.state.knowledge_store = knowledge_store
        app.state.indexer = indexer

        logger.info("Helpdesk Retrieval started successfully")

        yield  # Application runs here

        # === SHUTDOWN ===
        logger.info("Shutting down Helpdesk Retrieval")

        if resume_scheduler:
            await resume_scheduler.stop()

        await registry.aclose()
        await close_database()

        logger.info("Helpdesk Retrieval shutdown complete")

    return lifespan


def create_app(legacy_source: Optional[ILegacyRecordSource] = None) -> FastAPI:
    """
    Build the FastAPI host.

    Args:
        legacy_source: Reader for the legacy CRM; indexing is disabled without one
    """
    app = FastAPI(
        title="Helpdesk Retrieval API",
        description="Provider gateway, hybrid knowledge search and legacy record indexing.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_build_lifespan(legacy_source)
    )

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        Health check endpoint.

        Reports backend configuration, embedding cache usage and the state
        of the indexer.
        """
        gateway = getattr(request.app.state, "gateway", None)
        knowledge_store = getattr(request.app.state, "knowledge_store", None)
        indexer = getattr(request.app.state, "indexer", None)

        checks = {
            "generation": "unavailable",
            "embedding": "unavailable",
            "indexer": "disabled",
        }
        backends = []

        if gateway is not None:
            checks["generation"] = "available" if gateway.is_generation_available() else "unavailable"
            checks["embedding"] = "available" if gateway.is_embedding_available() else "unavailable"
            backends = [
                {
                    "name": info.name,
                    "configured": info.is_configured,
                    "free": info.is_free,
                    "generation_rank": info.generation_rank,
                    "embedding_rank": info.embedding_rank,
                    "models": info.models,
                }
                for info in gateway.get_backends_info()
            ]

        if indexer is not None:
            if indexer.is_running:
                checks["indexer"] = "running"
            else:
                checks["indexer"] = "idle" if indexer.is_available() else "unavailable"

        return {
            "status": "healthy" if checks["embedding"] == "available" else "degraded",
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
            "backends": backends,
            "embedding_cache": knowledge_store.get_cache_stats() if knowledge_store else None,
        }

    @app.get("/", tags=["Root"])
    async def root():
        """API information."""
        return {
            "name": "Helpdesk Retrieval API",
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "helpdesk_retrieval.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
