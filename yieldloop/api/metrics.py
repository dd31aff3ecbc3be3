"""Prometheus /metrics endpoint: treasury, ledger and cycle gauges."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from aiohttp import web
from prometheus_client import CollectorRegistry, Gauge, Info, generate_latest

from yieldloop.api import ctx_key

log = structlog.get_logger()

# Custom registry avoids pytest conflicts with the global default registry.
registry = CollectorRegistry()

# --- Treasury gauges ---
treasury_value = Gauge("yl_treasury_value_usd", "Wallet stable balance plus deployed positions", registry=registry)
growth_pct = Gauge("yl_growth_pct", "Lifetime growth over the seed value (%)", registry=registry)
compounded_usd = Gauge("yl_compounded_usd", "Cumulative positive P&L in USD", registry=registry)

# --- Outcome counters (ledger totals, exposed as gauges) ---
successful_actions = Gauge("yl_successful_actions", "Successful cycle actions", registry=registry)
failed_actions = Gauge("yl_failed_actions", "Failed cycle actions", registry=registry)
milestones_reached = Gauge("yl_milestones_reached", "Growth milestones reached", registry=registry)

# --- Cycle gauges ---
cycle_count = Gauge("yl_cycle_count", "Cycles started since process start", registry=registry)
cycle_running = Gauge("yl_cycle_running", "Cycle in flight (1=yes, 0=no)", registry=registry)
last_cycle_timestamp = Gauge("yl_last_cycle_timestamp_seconds", "Unix time of the last finished cycle",
                             registry=registry)
uptime_seconds = Gauge("yl_uptime_seconds", "Process uptime in seconds", registry=registry)

system_info = Info("yl_system", "Yield loop metadata", registry=registry)


async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus scrape endpoint. Reads current state and returns text metrics."""
    ctx = request.app[ctx_key]
    config = ctx["config"]
    ledger_store = ctx["ledger"]
    orchestrator = ctx.get("orchestrator")

    try:
        ledger = ledger_store.load()
        treasury_value.set(ledger.current_value)
        growth_pct.set(ledger.growth_percent)
        compounded_usd.set(ledger.total_compounded)
        successful_actions.set(ledger.successful_actions)
        failed_actions.set(ledger.failed_actions)
        milestones_reached.set(len(ledger.milestones_reached))

        if orchestrator is not None:
            state = orchestrator.state
            cycle_count.set(state.run_count)
            cycle_running.set(1 if state.running else 0)
            if state.last_run:
                last_cycle_timestamp.set(state.last_run.timestamp())

        started_at = ctx.get("started_at")
        if started_at:
            uptime_seconds.set((datetime.now(timezone.utc) - started_at).total_seconds())

        system_info.info({"mode": config.mode, "version": "1.0.0"})
    except Exception as e:
        log.error("metrics.collect_error", error=str(e), error_type=type(e).__name__)

    output = generate_latest(registry)
    resp = web.Response(body=output)
    resp.headers["Content-Type"] = "text/plain; version=0.0.4; charset=utf-8"
    return resp
