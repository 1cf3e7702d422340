"""Huddle Backend Application.

This is the main entry point for the Huddle realtime group-messaging
service. Run it with:

    uvicorn huddle.main:app --host 0.0.0.0 --port 8000

Modules:
    - chat: WebSocket group chat (membership gate, messages, reactions,
      presence, typing, read receipts) and the history endpoint
    - auth: JWT access token verification
    - store: DuckDB persistence
    - client: Python client library (timeline reconciliation, typing
      debounce, voice recording flow)
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from huddle.auth import TokenAuthenticator
from huddle.chat.events import ChatEventHandler
from huddle.chat.gate import MembershipGate
from huddle.chat.manager import ConnectionManager
from huddle.chat.messages import MessageService
from huddle.chat.router import router as chat_router
from huddle.config import AppSettings, get_config
from huddle.store.service import ChatStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn/websockets log every frame at debug level
for _noisy in ("websockets", "websockets.protocol", "httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppSettings = app.state.config or get_config()
    app.state.config = config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in huddle.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = ChatStore(config.storage.db_path)
    timeout = config.realtime.persistence_timeout_seconds

    app.state.store = store
    app.state.authenticator = TokenAuthenticator(
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.auth.algorithm,
        email_lookup=store.find_user_id_by_email,
        access_token_minutes=config.auth.access_token_minutes,
    )
    app.state.manager = ConnectionManager()
    gate = MembershipGate(store, timeout=timeout)
    app.state.messages = MessageService(store, gate, config.realtime)
    app.state.events = ChatEventHandler(app.state.manager, gate, app.state.messages)
    logger.info("Chat core ready (db=%s)", config.storage.db_path)

    yield  # Application runs here

    # Shutdown
    store.close()
    logger.info("Application shutdown complete")


def create_app(config: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Settings to use. When omitted, settings are loaded from
            huddle.settings.yaml at startup.
    """
    app = FastAPI(
        title="Huddle API",
        description="Realtime group messaging core",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint."""
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run(
        "huddle.main:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level,
    )
