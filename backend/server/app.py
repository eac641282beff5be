"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware and logging
- Initialize shared resources (the relay gateway)
- Register routes
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import AppConfig
from observability import logger
from observability.logger import log_event
from session.gateway import RelayGateway
from upstream.connection import ConnectFn

from server.routes import register_routes


def create_app(
    config: AppConfig | None = None,
    *,
    connect_fn: ConnectFn | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with different configurations (and a fake upstream dialer)
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()

    logger.configure(enabled=config.enable_json_logs, level=config.log_level)

    # One gateway per process; it owns every upstream connection
    gateway = RelayGateway(config=config, connect_fn=connect_fn)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        log_event({
            "event_type": "SERVER_STARTED",
            "env": config.env,
            "port": config.port,
            "upstream_url": config.upstream_url,
            **gateway.describe(),
        })
        yield
        await gateway.shutdown()
        log_event({"event_type": "SERVER_STOPPED"})

    app = FastAPI(title="PTT Relay Gateway", lifespan=lifespan)

    app.state.config = config
    app.state.gateway = gateway

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app
