"""Narrator: turns a cycle outcome into a status update and publishes it.

Publishing writes the local dashboard document first; the remote dashboard
push and the Telegram post follow and may fail without undoing it.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import httpx
import structlog

from yieldloop.shell.config import DashboardConfig
from yieldloop.shell.contract import (
    Action, ActionResult, Decision, MarketSnapshot, StatusUpdate, UpdateKind,
)
from yieldloop.shell.dashboard import DashboardStore
from yieldloop.shell.ledger import Ledger
from yieldloop.telegram.notifications import Notifier

log = structlog.get_logger()

MAX_BODY = 480
SOCIAL_LIMIT = 280
SOCIAL_BODY_LIMIT = 250

ACTION_COUNT_MILESTONES = {1: "first_action", 10: "ten_actions", 100: "hundred_actions"}

_VERBS = {
    Action.DEPOSIT: "deposited",
    Action.WITHDRAW: "withdrew",
    Action.MIGRATE: "migrated",
    Action.COMPOUND: "compounded rewards",
    Action.DEPLOY_TOKEN: "deployed the token",
    Action.DEPLOY_VAULT: "deployed the vault",
}


def _bounded(text: str, limit: int = MAX_BODY) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def growth_milestone_key(tier: int) -> str:
    return "treasury_doubled" if tier >= 100 else f"treasury_growth_{tier}pct"


def format_for_social(update: StatusUpdate) -> str:
    """Plain-text post: title, body and stats capped, links appended, 280 max."""
    stats = " | ".join(f"{k}: {v}" for k, v in update.stats.items())
    text = f"{update.title}\n\n{update.body}\n\n{stats}"
    if len(text) > SOCIAL_BODY_LIMIT:
        text = text[: SOCIAL_BODY_LIMIT - 3] + "..."
    links = "\n".join(f"{name}: {url}" for name, url in update.links.items())
    if links:
        text += f"\n\n{links}"
    return text[:SOCIAL_LIMIT]


class Narrator:
    def __init__(
        self,
        store: DashboardStore,
        config: DashboardConfig,
        notifier: Notifier | None = None,
        explorer_link: Callable[[str], str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._notifier = notifier
        self._explorer_link = explorer_link or (lambda tx: "")
        self._client = client or httpx.AsyncClient(timeout=15.0)

    async def close(self) -> None:
        await self._client.aclose()

    def _links(self, tx_ref: Optional[str] = None) -> dict[str, str]:
        links: dict[str, str] = {}
        if tx_ref:
            url = self._explorer_link(tx_ref)
            if url:
                links["Transaction"] = url
        if self._config.public_url:
            links["Dashboard"] = self._config.public_url
        return links

    # --- Builders ---

    def narrate(
        self,
        decision: Decision,
        result: ActionResult,
        ledger: Ledger,
        snapshot: MarketSnapshot | None = None,
    ) -> StatusUpdate:
        position = snapshot.positions[0] if snapshot and snapshot.positions else None
        position_name = position.name if position else "Idle"
        apy = position.apy if position else 0.0
        # Fields left None keep the mirrored dashboard value
        partial = snapshot is not None and not snapshot.complete
        if snapshot is not None and not partial:
            treasury = snapshot.total_value_usd
        elif ledger.seed_value is not None:
            treasury = ledger.current_value
        else:
            treasury = None
        reported = treasury if decision.action == Action.HOLD else ledger.current_value
        treasury_text = f"${treasury:.2f}" if treasury is not None else "n/a"
        details = {
            "protocol": None if partial else (
                (position.protocol or position.name.split(" ")[0]) if position else "Idle"),
            "pool": None if partial else (position_name if position else "None"),
            "new_treasury_usd": round(reported, 2) if reported is not None else None,
            "apy_current": None if partial else round(apy, 4),
            "growth_percent": ledger.growth_percent,
            "total_compounded": round(ledger.total_compounded, 2),
        }

        if snapshot is not None and not snapshot.is_healthy:
            issues = "; ".join(snapshot.warnings) or "treasury data unavailable"
            return StatusUpdate(
                kind=UpdateKind.ALERT,
                title="Yield loop alert",
                body=_bounded(f"Health check failed, holding position. {issues}"),
                action="hold",
                stats={"Treasury": treasury_text, "Warnings": str(len(snapshot.warnings))},
                links=self._links(),
                details=details,
            )

        if decision.action == Action.HOLD:
            gas = f"{snapshot.gas_price_gwei:.2f} Gwei" if snapshot else "n/a"
            return StatusUpdate(
                kind=UpdateKind.HEARTBEAT,
                title="Yield loop check-in",
                body=_bounded(f"Markets stable. Holding {position_name} at {apy:.2f}% APY."),
                action="heartbeat",
                stats={
                    "Treasury": treasury_text,
                    "Position": position_name,
                    "APY": f"{apy:.2f}%",
                    "Gas": gas,
                },
                links=self._links(),
                details=details,
            )

        verb = _VERBS.get(decision.action, decision.action.value.lower())
        target = f" into {decision.venue}" if decision.action == Action.DEPOSIT and decision.venue else ""
        if result.success:
            body = (f"Just {verb}{target}! Treasury now ${ledger.current_value:.2f} "
                    f"({ledger.growth_percent:+.1f}%).")
            details["amount_usd"] = decision.amount_usd
        else:
            body = (f"{decision.action.value.lower()} failed: {result.error}. Holding position. "
                    f"Treasury safe at ${ledger.current_value:.2f}.")
        details["tx_ref"] = result.tx_ref

        milestone = None
        if result.success:
            milestone = ACTION_COUNT_MILESTONES.get(ledger.successful_actions)

        return StatusUpdate(
            kind=UpdateKind.ACTION,
            title="Yield loop update",
            body=_bounded(body),
            action=decision.action.value.lower(),
            stats={
                "Treasury": f"${ledger.current_value:.2f}",
                "Growth": f"{ledger.growth_percent:+.2f}%",
                "Compounded": f"${ledger.total_compounded:.2f}",
            },
            links=self._links(result.tx_ref),
            details=details,
            milestone=milestone,
        )

    def milestone(self, tier: int, message: str, ledger: Ledger) -> StatusUpdate:
        return StatusUpdate(
            kind=UpdateKind.MILESTONE,
            title="Milestone reached",
            body=_bounded(f"{message} Treasury: ${ledger.current_value:.2f} "
                          f"({ledger.growth_percent:+.1f}% from seed)."),
            action="milestone",
            stats={
                "Milestone": f"+{tier}%",
                "Treasury": f"${ledger.current_value:.2f}",
                "Total Growth": f"{ledger.growth_percent:+.2f}%",
            },
            links=self._links(),
            details={
                "new_treasury_usd": round(ledger.current_value, 2),
                "growth_percent": ledger.growth_percent,
                "total_compounded": round(ledger.total_compounded, 2),
            },
            milestone=growth_milestone_key(tier),
        )

    def alert(self, alert_type: str, message: str) -> StatusUpdate:
        return StatusUpdate(
            kind=UpdateKind.ALERT,
            title="Yield loop alert",
            body=_bounded(message),
            action="alert",
            stats={"Alert Type": alert_type},
            links=self._links(),
            details={},
        )

    # --- Publishing ---

    async def publish(self, update: StatusUpdate) -> bool:
        """Local write, then remote push, then social post. Never raises."""
        payload = update.to_dashboard()
        ok = True

        try:
            await asyncio.to_thread(self._store.apply_update, payload)
        except (OSError, ValueError, TypeError) as e:
            log.error("narrator.local_write_failed", error=str(e))
            ok = False

        if self._config.remote_url and self._config.remote_secret:
            ok = await self._push_remote(payload) and ok

        if self._notifier and self._notifier.configured:
            sent = await self._notifier.send(format_for_social(update))
            if not sent:
                log.warning("narrator.social_failed", kind=update.kind.value)
            ok = sent and ok

        log.info("narrator.published", kind=update.kind.value, action=update.action, ok=ok)
        return ok

    async def _push_remote(self, payload: dict) -> bool:
        url = f"{self._config.remote_url.rstrip('/')}/api/update"
        try:
            resp = await self._client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self._config.remote_secret}"},
            )
        except httpx.HTTPError as e:
            log.error("narrator.remote_push_error", url=url, error=str(e))
            return False
        if resp.status_code >= 400:
            log.error("narrator.remote_push_failed", url=url, status=resp.status_code, body=resp.text[:200])
            return False
        return True
