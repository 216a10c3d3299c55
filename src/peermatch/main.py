from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from peermatch.config import settings
from peermatch.errors import ConflictError, MatchExpiredError, MatchNotFoundError
from peermatch.monitoring.logging_config import setup_logging

logger = logging.getLogger(__name__)


class _CORSMiddleware(CORSMiddleware):
    """CORSMiddleware that lets WebSocket upgrades through without an Origin check."""

    async def __call__(self, scope, receive, send):  # type: ignore[override]
        if scope["type"] == "websocket":
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    from peermatch.dependencies import build_services
    from peermatch.redis_client import CoordinationStore
    from peermatch.services.periodic import PeriodicTask
    from peermatch.ws.notifier import NotificationListener

    store = CoordinationStore()
    await store.initialize()
    services = build_services(store)
    app.state.services = services

    listener = NotificationListener(
        store, services.registry, on_session_ended=services.rooms.handle_session_ended
    )
    listener.start()

    loops: list[PeriodicTask] = []
    if settings.run_background_loops:
        loops = [
            PeriodicTask("matchmaking", settings.matchmaking_interval_seconds, services.matchmaker.tick),
            PeriodicTask("pending_expiry", settings.expiry_interval_seconds, services.sweeper.tick),
        ]
        for loop in loops:
            loop.start()
    logger.info(
        "Instance started",
        extra={"instance_id": settings.instance_id, "background_loops": bool(loops)},
    )

    yield

    # Shutdown: stop loops before the store goes away
    for loop in loops:
        await loop.stop()
    await listener.stop()
    await store.close()


def _error_body(code: str, exc: Exception) -> dict:
    return {"ok": False, "error": code, "detail": str(exc)}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content=_error_body("conflict", exc))

    @app.exception_handler(MatchNotFoundError)
    async def _not_found(request: Request, exc: MatchNotFoundError):
        return JSONResponse(status_code=404, content=_error_body("not_found", exc))

    @app.exception_handler(MatchExpiredError)
    async def _expired(request: Request, exc: MatchExpiredError):
        return JSONResponse(status_code=410, content=_error_body("expired", exc))

    @app.exception_handler(RedisError)
    async def _store_unavailable(request: Request, exc: RedisError):
        logger.error("Coordination store error", extra={"path": request.url.path, "error": str(exc)})
        return JSONResponse(status_code=503, content=_error_body("store_unavailable", exc))


def create_app() -> FastAPI:
    app = FastAPI(
        title="peermatch",
        description="Peer matchmaking and skill-rating coordination",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        _CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    # Register routers
    from peermatch.api.router import api_router
    from peermatch.api.routes.internal import router as internal_router
    from peermatch.ws.match_ws import match_ws_router

    app.include_router(api_router, prefix="/api")
    app.include_router(internal_router)
    app.include_router(match_ws_router, prefix="/ws")

    return app
