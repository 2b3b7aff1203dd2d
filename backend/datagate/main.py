"""
Datagate - FastAPI Application Entry Point

Builds the application: middleware, exception handlers, the health router
and one generic entity router per registered entity. The store handle,
transaction runner and per-entity gateways are created by the lifespan
handler and kept on ``app.state``.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from datagate.api.v1 import health
from datagate.api.v1.entities import build_entity_router
from datagate.core.config import APP_VERSION, Settings, settings as default_settings
from datagate.core.database import Database
from datagate.core.error_handlers import register_exception_handlers
from datagate.core.logging_config import get_logger, setup_logging
from datagate.entities import build_registry
from datagate.middleware.logging import LoggingMiddleware
from datagate.middleware.rate_limit import RateLimitMiddleware
from datagate.middleware.request_id import RequestIDMiddleware
from datagate.middleware.security_headers import SecurityHeadersMiddleware
from datagate.repositories.registry import EntityRegistry
from datagate.schemas.descriptors import TransactionSpec
from datagate.services.entity_gateway import EntityGateway
from datagate.services.file_store import LocalFileStore, NullFileStore
from datagate.services.interfaces.file_store import IFileStore
from datagate.services.query_params import QueryParamTranslator
from datagate.services.transaction_runner import TransactionRunner

logger = get_logger(__name__)


def build_file_store(config: Settings) -> IFileStore:
    if config.file_storage_root:
        return LocalFileStore(config.file_storage_root, config.file_public_base_url)
    return NullFileStore()


def create_app(
    config: Optional[Settings] = None,
    registry: Optional[EntityRegistry] = None,
    file_store: Optional[IFileStore] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        config: Settings to use (defaults to the module-level settings)
        registry: Entities to expose (defaults to the catalog entities)
        file_store: Blob store for file cleanup (defaults from settings)

    Example:
        app = create_app(Settings(database_url="sqlite+aiosqlite:///:memory:"))
    """
    config = config or default_settings
    registry = registry or build_registry()
    file_store = file_store or build_file_store(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Startup:
            - Set up logging
            - Connect the store (creating tables outside production)
            - Build one gateway per registered entity

        Shutdown:
            - Dispose of the engine
        """
        setup_logging(level=config.log_level, json_format=config.log_json)

        database = Database(config.database_url, echo=config.database_echo)
        await database.connect()
        if config.environment != "production":
            await database.create_all()

        runner = TransactionRunner(database, defaults=TransactionSpec.from_settings(config))
        translator = QueryParamTranslator(
            default_page_size=config.default_page_size,
            max_json_length=config.max_json_param_length,
        )

        app.state.database = database
        app.state.gateways = {
            binding.name: EntityGateway(
                binding,
                database,
                runner,
                file_store=file_store,
                query_translator=translator,
                bulk_concurrency=config.bulk_concurrency,
            )
            for binding in registry
        }
        logger.info(
            "Application started",
            extra={"environment": config.environment, "entities": sorted(app.state.gateways)},
        )

        yield

        await database.dispose()
        logger.info("Application stopped")

    app = FastAPI(
        title=config.project_name,
        version=APP_VERSION,
        description="Query security and mutation translation gateway",
        openapi_url=f"{config.api_prefix}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.registry = registry
    register_exception_handlers(app)

    # Middleware is executed in reverse order of registration
    app.add_middleware(SecurityHeadersMiddleware)
    if config.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            requests=config.rate_limit_requests,
            window_seconds=config.rate_limit_window_seconds,
        )
    app.add_middleware(
        LoggingMiddleware,
        api_prefix=config.api_prefix,
        slow_request_ms=config.slow_request_ms,
    )
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["health"])
    for binding in registry:
        app.include_router(build_entity_router(binding.name), prefix=config.api_prefix)

    @app.get("/")
    async def root():
        """Basic API information."""
        return {
            "message": config.project_name,
            "version": APP_VERSION,
            "docs": "/docs",
            "entities": [binding.name for binding in registry],
        }

    return app


app = create_app()
