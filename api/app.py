"""FastAPI app factory + lifespan (startup/shutdown)."""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from agent import persistence
from agent.core import AgentLoop
from agent.llm import AnthropicAdapter
from agent.logging import get_logger, tagged
from agent.session import ChatStore
from sandbox.pool import SandboxPool

from . import routes

logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # Startup
    adapter = AnthropicAdapter(
        config.get_api_key("anthropic"),
        base_url=config.ANTHROPIC_BASE_URL,
    )
    pool = SandboxPool()
    routes.sandbox_pool = pool
    routes.agent_loop = AgentLoop(adapter, pool)
    routes.chat_store = ChatStore()
    routes._start_time = time.time()
    pool.start_reaper()
    logger.info("Server started (model=%s)", config.MODEL, extra=tagged("api"))

    yield

    # Shutdown
    await pool.shutdown()
    persistence.shutdown(wait=True)
    logger.info("Server stopped", extra=tagged("api"))


def create_app() -> FastAPI:
    """Build and return the configured FastAPI application."""
    app = FastAPI(
        title="Spinel Compare API",
        description="Side-by-side comparison of a vanilla and a Spinel-equipped code agent",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS - restrict origins in production, allow the local frontend in development
    cors_origins = config.CORS_ORIGINS.strip()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(routes.router)
    return app
