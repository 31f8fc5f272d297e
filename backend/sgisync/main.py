import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from sgisync.config import Settings
from sgisync.config import get_settings
from sgisync.constants import API_PREFIX
from sgisync.constants import SYNC_PREFIX
from sgisync.database import get_session_factory
from sgisync.database import initialize_database
from sgisync.events import EventBus
from sgisync.routers.sync import router as sync_router
from sgisync.routers.websocket import router as websocket_router
from sgisync.services.reconciliation import ReconciliationEngine
from sgisync.websocket.manager import TopicConnectionManager

_settings = get_settings()

# --------------------------------------------------------------------------
# LOGGING CONFIGURATION:
# --------------------------------------------------------------------------
#
# - Default log level: INFO (dev-friendly)
# - Can be set at runtime with LOG_LEVEL env (e.g. LOG_LEVEL=WARNING for CI)
# - Explicitly suppresses spammy WebSocket modules to WARNING by default
#
_log_level_name = _settings.log_level.upper()
_log_level = getattr(logging, _log_level_name, logging.INFO)
logging.basicConfig(level=_log_level, format="%(levelname)s - %(message)s", handlers=[logging.StreamHandler()])

# Suppress verbose INFO logs from known-noisy modules (e.g., websocket connects)
for _noisy_mod in ("sgisync.routers.websocket", "sgisync.websocket.manager"):
    logging.getLogger(_noisy_mod).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _cors_origins(settings: Settings) -> list[str]:
    # ``ALLOWED_CORS_ORIGINS`` can contain a comma-separated list.
    if settings.allowed_cors_origins.strip():
        return [o.strip() for o in settings.allowed_cors_origins.split(",") if o.strip()]
    if settings.testing or settings.environment != "production":
        return ["*"]
    return ["http://localhost:5173"]


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    """Build the sync server.

    Every collaborator is created here and stored on ``app.state`` so tests
    can run several isolated apps side by side, each with its own database.
    """
    settings = settings or _settings
    session_factory = session_factory or get_session_factory()

    event_bus = EventBus()
    topic_manager = TopicConnectionManager(event_bus=event_bus, settings=settings)
    engine = ReconciliationEngine(session_factory, event_bus=event_bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            # Create DB tables if they don't exist
            initialize_database(session_factory.kw.get("bind"))
            logger.info("Database tables initialized")
        except Exception as e:
            logger.error(f"Error during startup: {e}")
        yield
        await topic_manager.shutdown()
        logger.info("Connection manager stopped")

    app = FastAPI(redirect_slashes=True, lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.event_bus = event_bus
    app.state.topic_manager = topic_manager
    app.state.engine = engine

    cors_origins = _cors_origins(settings)

    # Custom exception handler to ensure CORS headers are included in error responses
    @app.exception_handler(Exception)
    async def ensure_cors_on_errors(request: Request, exc: Exception):
        """Ensure CORS headers are included even in error responses."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        origin = request.headers.get("origin", "*")
        allow_origin = origin if origin in cors_origins or "*" in cors_origins else cors_origins[0]
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
            headers={
                "Access-Control-Allow-Origin": allow_origin,
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Allow-Methods": "*",
                "Access-Control-Allow-Headers": "*",
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include our API routers with centralized prefixes
    app.include_router(websocket_router, prefix=API_PREFIX)
    app.include_router(sync_router, prefix=f"{API_PREFIX}{SYNC_PREFIX}")

    @app.get("/")
    async def read_root():
        """Return a simple message to indicate the API is working."""
        return {"message": "SGI sync server is running"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=3001)
