import asyncio
import contextlib
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.api.router import api_router
from app.core.config import Settings, get_settings
from app.core.db import close_engine, create_schema, get_session_factory, init_engine
from app.core.logging_config import configure_logging
from app.infra.db.storage import SequenceConversationIds, SqlStorage
from app.infra.files import LocalFileStore
from app.infra.realtime import EventBus, WebSocketTransport
from app.infra.storage.memory import InMemoryConversationIds, InMemoryStorage
from app.services.support_desk import SupportDesk

logger = structlog.get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    settings.validate_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Initialize infrastructure
        engine = None
        if settings.storage_backend == "postgres":
            engine = init_engine(settings)
            if settings.db_auto_create:
                await create_schema(engine)
            session_factory = get_session_factory()
            storage = SqlStorage(session_factory)
            ids = SequenceConversationIds(session_factory)
        else:
            storage = InMemoryStorage()
            ids = InMemoryConversationIds()

        bus = EventBus()
        desk = SupportDesk(
            settings,
            storage,
            ids,
            bus,
            files=LocalFileStore(settings.upload_dir),
        )
        await desk.startup()
        app.state.bus = bus
        app.state.transport = WebSocketTransport(bus)
        app.state.desk = desk
        sweeper = asyncio.create_task(
            desk.run_presence_sweeper(settings.presence_sweep_interval_seconds)
        )
        logger.info("app_started", storage_backend=settings.storage_backend, env=settings.app_env)

        yield

        # Graceful shutdown
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        app.state.desk = None
        if engine is not None:
            await close_engine(engine)

    app = FastAPI(
        title="Live Support Desk API",
        version="0.1.0",
        docs_url="/docs" if settings.app_env != "production" else None,
        redoc_url="/redoc" if settings.app_env != "production" else None,
        lifespan=lifespan,
    )

    if settings.trusted_hosts:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=settings.trusted_hosts,
        )

    if settings.force_https:
        app.add_middleware(HTTPSRedirectMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Visitor-Session-Id", "X-Agent-Id"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault(
            "Referrer-Policy",
            "strict-origin-when-cross-origin",
        )
        if settings.force_https:
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=31536000; includeSubDomains",
            )
        return response

    app.include_router(api_router, prefix="/api")

    @app.get("/", tags=["meta"])
    async def root() -> dict[str, str]:
        return {"service": "live-support-desk", "status": "ok"}

    return app


app = create_app()
