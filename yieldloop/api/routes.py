"""REST endpoint handlers: dashboard push/pull, ledger and activity reads."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import structlog
from aiohttp import web

from yieldloop.api import ctx_key
from yieldloop.shell.dashboard import missing_fields
from yieldloop.shell.ledger import performance_summary

log = structlog.get_logger()


def _safe_int(value: str, default: int) -> int:
    """Parse int from query param, returning default on failure."""
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _envelope(data, mode: str) -> dict:
    return {
        "data": data,
        "meta": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": mode,
            "version": "1.0.0",
        },
    }


def _bad_request(message: str) -> web.Response:
    return web.json_response({"error": {"code": "bad_request", "message": message}}, status=400)


async def update_handler(request: web.Request) -> web.Response:
    """Dashboard push: fold one status update into the mirrored state."""
    store = request.app[ctx_key]["dashboard"]
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _bad_request("Body must be a JSON object")
    if not isinstance(payload, dict):
        return _bad_request("Body must be a JSON object")

    missing = missing_fields(payload)
    if missing:
        return _bad_request(f"Missing required fields: {', '.join(missing)}")

    await asyncio.to_thread(store.apply_update, payload)
    log.info("api.update_received", action=payload["action"])
    return web.json_response({
        "success": True,
        "message": "Update received",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


async def status_handler(request: web.Request) -> web.Response:
    """Dashboard pull: mirrored state plus freshness fields."""
    store = request.app[ctx_key]["dashboard"]
    return web.json_response(
        store.status_view(),
        headers={"Cache-Control": "public, s-maxage=30, stale-while-revalidate=60"},
    )


async def ledger_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    ledger = ctx["ledger"].load()
    data = ledger.to_dict()
    data["success_rate"] = ledger.success_rate
    data["summary"] = performance_summary(ledger)
    return web.json_response(_envelope(data, ctx["config"].mode))


async def activity_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    activity = ctx.get("activity_logger")
    if activity is None:
        return web.json_response(_envelope([], ctx["config"].mode))

    limit = max(1, min(_safe_int(request.query.get("limit", "50"), 50), 500))
    rows = await activity.query(
        limit=limit,
        since=request.query.get("since"),
        category=request.query.get("category"),
        severity=request.query.get("severity"),
    )
    return web.json_response(_envelope(rows, ctx["config"].mode))


async def cycles_handler(request: web.Request) -> web.Response:
    """Per-cycle records, newest first."""
    ctx = request.app[ctx_key]
    activity = ctx.get("activity_logger")
    if activity is None:
        return web.json_response(_envelope([], ctx["config"].mode))

    limit = max(1, min(_safe_int(request.query.get("limit", "20"), 20), 200))
    rows = await activity.recent_cycles(limit)
    return web.json_response(_envelope(rows, ctx["config"].mode))


def setup_routes(app: web.Application) -> None:
    app.router.add_post("/api/update", update_handler)
    app.router.add_get("/api/status", status_handler)
    app.router.add_get("/api/ledger", ledger_handler)
    app.router.add_get("/api/activity", activity_handler)
    app.router.add_get("/api/cycles", cycles_handler)
