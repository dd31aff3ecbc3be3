"""Mirrored dashboard state document.

Shared by the narrator's local write and the HTTP receiver, so both paths
apply updates with identical history and milestone rules.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import structlog

from yieldloop.shell.storage import atomic_write_json, read_json

log = structlog.get_logger()

REQUIRED_FIELDS = ("timestamp", "action", "narrative")
RECENT_HISTORY = 10


def missing_fields(payload: dict) -> list[str]:
    return [f for f in REQUIRED_FIELDS if not payload.get(f)]


def _initial_state() -> dict:
    return {
        "last_update": datetime.now(timezone.utc).isoformat(),
        "treasury_usd": 0.0,
        "current_apy": 0.0,
        "current_protocol": "Initializing",
        "current_position": "None",
        "growth_percent": 0.0,
        "total_compounded": 0.0,
        "status": "Agent starting up...",
        "history": [],
        "milestones": [],
    }


def _parse_ts(value: str) -> datetime | None:
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class DashboardStore:
    def __init__(self, path: str, history_cap: int = 100, freshness_hours: float = 6.0) -> None:
        self._path = path
        self._cap = history_cap
        self._freshness_seconds = freshness_hours * 3600
        self._write_lock = threading.Lock()  # apply_update runs in worker threads

    def load(self) -> dict:
        try:
            state = read_json(self._path)
        except (OSError, ValueError) as e:
            log.warning("dashboard.read_failed", path=self._path, error=str(e))
            state = None
        return state if state is not None else _initial_state()

    def apply_update(self, update: dict) -> dict:
        """Fold one update into the state and persist atomically.

        Raises ValueError when a required field is missing; write faults
        propagate to the caller.
        """
        missing = missing_fields(update)
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
        with self._write_lock:
            return self._fold(update)

    def _fold(self, update: dict) -> dict:
        state = self.load()
        details = update.get("details") or {}

        state["last_update"] = update["timestamp"]
        if details.get("new_treasury_usd") is not None:
            state["treasury_usd"] = details["new_treasury_usd"]
        if details.get("apy_current") is not None:
            state["current_apy"] = details["apy_current"]
        if details.get("protocol"):
            state["current_protocol"] = details["protocol"]
        if details.get("pool"):
            state["current_position"] = details["pool"]
        if details.get("growth_percent") is not None:
            state["growth_percent"] = details["growth_percent"]
        if details.get("total_compounded") is not None:
            state["total_compounded"] = details["total_compounded"]

        # Most recent first, capped
        state["history"] = ([update] + list(state.get("history", [])))[: self._cap]

        milestone = update.get("milestone")
        milestones = list(state.get("milestones", []))
        if milestone and milestone not in milestones:
            milestones.append(milestone)
        state["milestones"] = milestones

        state["status"] = update["narrative"]

        atomic_write_json(self._path, state)
        log.info("dashboard.updated", action=update["action"], milestone=milestone)
        return state

    def status_view(self, now: datetime | None = None) -> dict:
        """Current state plus freshness fields computed at read time."""
        now = now or datetime.now(timezone.utc)
        state = self.load()
        last = _parse_ts(state.get("last_update", ""))
        seconds = int((now - last).total_seconds()) if last else None
        history = state.get("history", [])
        return {
            **state,
            "seconds_since_update": seconds,
            "is_active": seconds is not None and seconds < self._freshness_seconds,
            "recent_history": history[:RECENT_HISTORY],
            "total_actions": len(history),
        }
