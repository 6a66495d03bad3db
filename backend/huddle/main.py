"""Huddle Backend Application.

This is the main entry point for the Huddle chat service: real-time chat
rooms, private messages, typing indicators and read receipts over a single
WebSocket endpoint.

Modules:
    - chat: chat core (presence, rooms, history, receipts, fanout) and router
    - auth: bearer-token identity verification
    - config: YAML-backed settings
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from huddle import __version__
from huddle.auth.service import IdentityVerifier
from huddle.chat.core import ChatCore
from huddle.chat.router import router as chat_router
from huddle.config import AppSettings, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every connection to the identity provider;
# uvicorn.access logs every HTTP poll.
for _noisy in (
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_verifier(config: AppSettings) -> Optional[IdentityVerifier]:
    """Identity verifier for join tokens, or None when auth is disabled."""
    if not config.auth.enabled:
        return None
    if not config.auth.userinfo_url:
        logger.warning("Auth enabled but auth.userinfo_url is empty; tokens will be ignored")
        return None
    return IdentityVerifier(
        userinfo_url=config.auth.userinfo_url,
        api_key=config.secrets.auth.api_key,
        timeout=config.auth.timeout_seconds,
    )


def create_app(config: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application and its chat core.

    Args:
        config: Settings to use. Defaults to ``get_config()``.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in huddle.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        logger.info(
            f"Chat core ready: rooms={app.state.core.list_rooms()}, "
            f"auth={'on' if app.state.verifier else 'off'}"
        )

        yield  # Application runs here

        # Shutdown
        app.state.core.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Huddle API",
        description="Real-time chat rooms, private messages, typing and read receipts",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.core = ChatCore.from_settings(config.chat)
    app.state.verifier = build_verifier(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(chat_router)

    @app.get("/health")
    async def health(request: Request) -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object with online-user count, rooms and message totals.
        """
        core: ChatCore = request.app.state.core
        return {
            "status": "ok",
            "usersOnline": len(core.online_users()),
            "rooms": core.list_rooms(),
            "totalMessages": core.total_messages(),
            "totalPrivateChats": core.private_chat_count(),
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve ``app`` with uvicorn."""
    config = get_config()
    uvicorn.run(
        "huddle.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.logging.level,
    )
