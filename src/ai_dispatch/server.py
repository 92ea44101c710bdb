"""
server.py — FastAPI application exposing the dispatcher over HTTP.

  POST /v1/complete                    — completion; JSON or SSE (``stream: true``)
  GET  /v1/models                      — unified ``backend:model`` list
  GET  /backends                       — configuration + breaker state per backend
  GET  /backends/{backend}/test        — connection test
  POST /backends/{backend}/models/refresh
  GET  /metrics                        — dispatcher metrics snapshot
  GET  /stats                          — cache / circuit / quota / queue / stream stats
  GET  /health                         — liveness / readiness probe
  /admin/*                             — see admin.py

Inbound HTTP throttling is handled by slowapi; outbound backend quotas are the
dispatcher's own rate limiter.
"""

from __future__ import annotations

import argparse
import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from . import __version__
from .admin import get_dispatcher
from .admin import router as admin_router
from .config import Settings, initialize_provider_env_vars
from .dispatcher import Dispatcher, build_dispatcher
from .errors import DispatchError
from .models import Backend, ChatRequest

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _backend_from_path(backend: str) -> Backend:
    return Backend.parse(backend)


# ══════════════════════════════════════════════════════════════════════════════
# App factory
# ══════════════════════════════════════════════════════════════════════════════


def create_app(dispatcher: Dispatcher | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI app.

    Passing ``dispatcher`` lets tests (or an embedding process) supply a
    pre-wired instance; otherwise one is built from ``settings`` at startup.
    Either way the app owns its lifecycle: started on startup, stopped on
    shutdown.
    """
    settings = settings or (dispatcher.settings if dispatcher is not None else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            instance = dispatcher or build_dispatcher(settings)
            await instance.start()
        except Exception:
            logger.exception("Dispatcher failed to start during lifespan startup")
            raise
        app.state.dispatcher = instance
        logger.info("AI dispatcher %s started", __version__)
        try:
            yield
        finally:
            app.state.dispatcher = None
            try:
                await instance.stop()
            except Exception:
                logger.exception("Error while stopping dispatcher during shutdown")

    app = FastAPI(
        title="AI Dispatch",
        version=__version__,
        description="Multi-backend AI completion dispatcher with caching, "
                    "deduplication, circuit breaking and quota-aware queueing.",
        lifespan=lifespan,
    )
    app.state.dispatcher = None

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.http_rate_limit],
        enabled=settings.http_rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Admin-Token"],
    )

    _register_error_handlers(app, settings)
    _register_routes(app)
    app.include_router(admin_router)
    return app


# ══════════════════════════════════════════════════════════════════════════════
# Error handlers
# ══════════════════════════════════════════════════════════════════════════════


def _register_error_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(_request: Request, exc: DispatchError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400, content={"error": {"message": str(exc), "type": "ValueError"}}
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = str(exc) if settings.debug else "Internal server error"
        return JSONResponse(status_code=500, content={"error": {"message": message}})


# ══════════════════════════════════════════════════════════════════════════════
# Routes
# ══════════════════════════════════════════════════════════════════════════════


def _register_routes(app: FastAPI) -> None:
    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, str]:
        return {"status": "ok", "service": "AI Dispatch"}

    # ── Health ────────────────────────────────────────────────────────────

    @app.get("/health", tags=["Observability"])
    async def health(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
        configured = dispatcher.configured_backends()
        available = [b.value for b in configured if not dispatcher.breakers[b].is_open]
        return {
            "status": "ok" if available else "degraded",
            "backends_available": available,
            "backends_configured": [b.value for b in configured],
            "active_streams": dispatcher.active_stream_count(),
        }

    # ── Completions ───────────────────────────────────────────────────────

    @app.post("/v1/complete", tags=["Completions"])
    async def complete(
        body: ChatRequest, dispatcher: Dispatcher = Depends(get_dispatcher)
    ) -> Any:
        options: dict[str, Any] = {
            "temperature": body.temperature,
            "max_tokens": body.max_tokens,
            "backend": body.backend,
            "priority": body.priority,
        }
        if not body.stream:
            result = await dispatcher.complete(body.messages, stream_id=body.stream_id, **options)
            return result.as_dict()

        # Reject bad input with a 400 before the SSE response is committed
        dispatcher.validator.validate(body.messages, **options)
        stream_id = body.stream_id or uuid.uuid4().hex

        async def event_stream() -> AsyncIterator[str]:
            yield _sse({"stream_id": stream_id})
            try:
                async for chunk in dispatcher.stream(body.messages, stream_id=stream_id, **options):
                    yield _sse({"chunk": chunk})
            except DispatchError as exc:
                yield _sse({"error": exc.to_dict()})
                return
            yield _sse({"done": True})

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    # ── Models ────────────────────────────────────────────────────────────

    @app.get("/v1/models", tags=["Discovery"])
    async def list_models(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
        models = await dispatcher.get_available_models()
        return {
            "object": "list",
            "current_model": dispatcher.get_current_model(),
            "data": [
                {"id": unified, "object": "model", "owned_by": unified.split(":", 1)[0]}
                for unified in models
            ],
        }

    # ── Backends ──────────────────────────────────────────────────────────

    @app.get("/backends", tags=["Backends"])
    async def list_backends(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
        circuits = dispatcher.breakers.get_stats()
        quotas = dispatcher.limiter.get_stats()
        return {
            "backends": {
                b.value: {
                    "configured": dispatcher.is_backend_configured(b),
                    "model": dispatcher.discovery.model_for(b),
                    "circuit": circuits.get(b.value),
                    "rate_limit": quotas.get(b.value),
                }
                for b in dispatcher.adapters
            },
            "current_model": dispatcher.get_current_model(),
        }

    @app.get("/backends/{backend}/test", tags=["Backends"])
    async def backend_connection_test(backend: str, dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
        result = await dispatcher.test_connection(_backend_from_path(backend))
        return result.model_dump()

    @app.post("/backends/{backend}/models/refresh", tags=["Backends"])
    async def refresh_backend_models(
        backend: str, dispatcher: Dispatcher = Depends(get_dispatcher)
    ) -> dict[str, Any]:
        b = _backend_from_path(backend)
        models = await dispatcher.refresh_models(b)
        return {"backend": b.value, "count": len(models), "models": models}

    # ── Observability ─────────────────────────────────────────────────────

    @app.get("/metrics", tags=["Observability"])
    async def metrics(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
        return dispatcher.get_metrics().as_dict()

    @app.get("/stats", tags=["Observability"])
    async def stats(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
        return dispatcher.get_stats()


app = create_app()


# ══════════════════════════════════════════════════════════════════════════════
# Entry point
# ══════════════════════════════════════════════════════════════════════════════


def main(argv: list[str] | None = None) -> None:
    """Run the HTTP server with uvicorn (``ai-dispatch-server``)."""
    import uvicorn

    initialize_provider_env_vars()
    settings = Settings()

    parser = argparse.ArgumentParser(description="AI Dispatch HTTP server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    parser.add_argument("--reload", action="store_true", help="auto-reload on code changes")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)
    logger.info("Starting AI dispatch server on %s:%d", args.host, args.port)

    if args.reload:
        uvicorn.run("ai_dispatch.server:app", host=args.host, port=args.port,
                    log_level=args.log_level.lower(), reload=True)
    else:
        uvicorn.run(create_app(settings=settings), host=args.host, port=args.port,
                    log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
