import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from conversion_agent.api.router import router
from conversion_agent.app_logging import init_logging
from conversion_agent.config import Settings, settings as default_settings
from conversion_agent.errors import ConversionAgentError, PersistenceFailure, ValidationFailure
from conversion_agent.models.store import SqliteStore
from conversion_agent.services.container import build_services, seed_from_file
from conversion_agent.services.orchestrator import Orchestrator

logger = logging.getLogger("conversion_agent.main")


async def _sweep_idle_sessions(orchestrator: Orchestrator, interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await orchestrator.sweep()
        except ConversionAgentError as exc:
            logger.warning("Session sweep failed: %s", exc)


def create_app(
    settings: Settings | None = None,
    store: SqliteStore | None = None,
    completion_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # startup: build services, create tables, seed, warm the knowledge cache
        services = build_services(settings, store=store, completion_transport=completion_transport)
        await services.store.init()
        if settings.KNOWLEDGE_SEED_PATH:
            await seed_from_file(services.store, settings.KNOWLEDGE_SEED_PATH)
        await services.knowledge.refresh()
        app.state.services = services

        sweeper = asyncio.create_task(
            _sweep_idle_sessions(services.orchestrator, settings.SESSION_SWEEP_INTERVAL_SECONDS)
        )
        logger.info("Conversion agent started (db=%s)", services.store.db_path)
        yield
        # shutdown: stop the sweeper, flush sessions, close the HTTP client
        sweeper.cancel()
        await services.close()
        logger.info("Conversion agent stopped")

    app = FastAPI(
        title="AI Conversion Agent for E-Commerce",
        description="A chat-based sales assistant that scores purchase intent, answers from a "
        "curated knowledge base and keeps a per-session cart.",
        version="0.2.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    init_logging(settings, app)

    @app.exception_handler(ValidationFailure)
    async def validation_failure_handler(request: Request, exc: ValidationFailure):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(PersistenceFailure)
    async def persistence_failure_handler(request: Request, exc: PersistenceFailure):
        logger.warning("PersistenceFailure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})

    app.include_router(router)

    @app.get("/api/health")
    async def health(request: Request):
        services = request.app.state.services
        return {
            "status": "ok",
            "sessions_cached": len(services.sessions),
            "knowledge": services.knowledge.stats(),
        }

    return app


app = create_app()
