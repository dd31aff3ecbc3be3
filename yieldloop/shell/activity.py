"""Activity Log: treasury timeline for observability.

Every cycle stage reports here. Entries land in SQLite and are mirrored to
structlog; cycle rows track each run from start to outcome.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from yieldloop.shell.database import Database

log = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class ActivityLogger:
    """Writes activity entries and cycle rows to DB, emits structlog."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def log(
        self,
        category: str,
        summary: str,
        severity: str = "info",
        detail: dict | str | None = None,
    ) -> None:
        ts = _now()

        detail_str = None
        if detail is not None:
            if isinstance(detail, str):
                detail_str = detail
            else:
                try:
                    detail_str = json.dumps(detail, default=str)
                except (TypeError, ValueError):
                    detail_str = str(detail)

        await self._db.execute(
            "INSERT INTO activity_log (timestamp, category, severity, summary, detail) VALUES (?, ?, ?, ?, ?)",
            (ts, category, severity, summary, detail_str),
        )
        await self._db.commit()

        log.info("activity", category=category, severity=severity, summary=summary)

    # --- Convenience methods ---

    async def cycle(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("CYCLE", summary, severity, detail)

    async def action(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("ACTION", summary, severity, detail)

    async def risk(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("RISK", summary, severity, detail)

    async def ledger(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("LEDGER", summary, severity, detail)

    async def system(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("SYSTEM", summary, severity, detail)

    # --- Cycle rows ---

    async def cycle_started(self, cycle_id: str, trigger: str) -> None:
        await self._db.execute(
            "INSERT INTO cycles (id, trigger, status, started_at) VALUES (?, ?, 'running', ?)",
            (cycle_id, trigger, _now()),
        )
        await self._db.commit()

    async def cycle_finished(
        self,
        cycle_id: str,
        status: str,
        action: str | None = None,
        success: bool | None = None,
        value_before: float | None = None,
        value_after: float | None = None,
        error: str | None = None,
    ) -> None:
        await self._db.execute(
            "UPDATE cycles SET status = ?, action = ?, success = ?, value_before = ?, "
            "value_after = ?, error = ?, finished_at = ? WHERE id = ?",
            (status, action, None if success is None else int(success),
             value_before, value_after, error, _now(), cycle_id),
        )
        await self._db.commit()

    # --- Query methods ---

    async def query(
        self,
        limit: int = 50,
        since: str | None = None,
        category: str | None = None,
        severity: str | None = None,
    ) -> list[dict]:
        """Filtered query for REST endpoint. Returns newest-first."""
        sql = "SELECT * FROM activity_log WHERE 1=1"
        params: list = []

        if since:
            sql += " AND timestamp >= ?"
            params.append(since)
        if category:
            sql += " AND category = ?"
            params.append(category)
        if severity:
            sql += " AND severity = ?"
            params.append(severity)

        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        return await self._db.fetchall(sql, tuple(params))

    async def recent_cycles(self, limit: int = 20) -> list[dict]:
        """Cycle rows for the REST endpoint. Returns newest-first."""
        return await self._db.fetchall(
            "SELECT * FROM cycles ORDER BY started_at DESC LIMIT ?", (limit,),
        )
