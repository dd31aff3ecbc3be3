"""API Server: aiohttp app with auth middleware, dashboard and REST routes."""

from __future__ import annotations

import hmac
from datetime import datetime, timezone

import structlog
from aiohttp import web

from yieldloop.api import api_key_key, ctx_key
from yieldloop.api.metrics import metrics_handler
from yieldloop.api.routes import setup_routes

log = structlog.get_logger()

# Readable without a token: the dashboard pull endpoint and the scrape target
PUBLIC_PATHS = ("/api/status", "/metrics")


def _unauthorized(message: str) -> web.Response:
    return web.json_response({"error": {"code": "unauthorized", "message": message}}, status=401)


@web.middleware
async def auth_middleware(request: web.Request, handler):
    """Static bearer token, compared in constant time."""
    if request.path in PUBLIC_PATHS and request.method == "GET":
        return await handler(request)

    api_key = request.app.get(api_key_key, "")
    if not api_key:
        return _unauthorized("API secret not configured")
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], api_key):
        return _unauthorized("Invalid or missing bearer token")
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Catch unhandled exceptions and return generic error (no tracebacks to clients)."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        log.error("api.unhandled_error", path=request.path, error=str(e),
                  error_type=type(e).__name__)
        return web.json_response(
            {
                "error": {"code": "internal_error", "message": "An unexpected error occurred"},
                "meta": {"timestamp": datetime.now(timezone.utc).isoformat(), "version": "1.0.0"},
            },
            status=500,
        )


def create_app(config, ledger, dashboard, activity_logger=None, orchestrator=None,
               api_key: str | None = None) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application(middlewares=[error_middleware, auth_middleware])

    app[api_key_key] = api_key if api_key is not None else config.api.secret

    app[ctx_key] = {
        "config": config,
        "ledger": ledger,
        "dashboard": dashboard,
        "activity_logger": activity_logger,
        "orchestrator": orchestrator,
        "started_at": datetime.now(timezone.utc),
    }

    setup_routes(app)
    app.router.add_get("/metrics", metrics_handler)
    return app
