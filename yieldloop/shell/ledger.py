"""Durable record of cumulative performance and cycle history.

The ledger is owned by LedgerStore. Everyone else gets the frozen Ledger
value it returns. One JSON document, replaced atomically on every write, so
a crash mid-cycle leaves the previous version readable.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Optional

import structlog

from yieldloop.shell.contract import (
    DEPLOYMENTS, FUND_MOVING, ActionResult, Decision, MarketSnapshot,
)
from yieldloop.shell.storage import atomic_write_json, read_json

log = structlog.get_logger()

SCHEMA_VERSION = 1

# (growth tier in percent, milestone message)
MILESTONES: tuple[tuple[int, str], ...] = (
    (10, "+10% growth reached!"),
    (20, "+20% growth - token deployment eligible!"),
    (30, "+30% growth - momentum building!"),
    (50, "+50% growth - vault deployment eligible!"),
    (100, "+100% growth - treasury doubled!"),
)

CONSECUTIVE_SUCCESS_LESSON = 3
REPEATED_FAILURE_LESSON = 2


def format_pnl(delta: float) -> str:
    sign = "+" if delta >= 0 else "-"
    return f"{sign}${abs(delta):.2f}"


@dataclass(frozen=True)
class LedgerEntry:
    cycle_id: str
    timestamp: str
    action: str
    venue: str
    success: bool
    value_before: float
    value_after: float
    pnl_delta: str
    tx_ref: Optional[str] = None
    notes: str = ""


@dataclass(frozen=True)
class Ledger:
    seed_value: Optional[float] = None
    current_value: float = 0.0
    growth_percent: float = 0.0
    total_compounded: float = 0.0
    successful_actions: int = 0
    failed_actions: int = 0
    last_action: str = "INIT"
    lessons: tuple[str, ...] = ()
    entries: tuple[LedgerEntry, ...] = ()
    milestones_reached: tuple[int, ...] = ()
    deployments_triggered: tuple[str, ...] = ()
    updated_at: Optional[str] = None

    @property
    def success_rate(self) -> float:
        total = self.successful_actions + self.failed_actions
        return self.successful_actions / total if total else 0.0

    @property
    def growth_fraction(self) -> float:
        return self.growth_percent / 100

    def has_cycle(self, cycle_id: str) -> bool:
        return any(e.cycle_id == cycle_id for e in self.entries)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["schema_version"] = SCHEMA_VERSION
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Ledger:
        return cls(
            seed_value=data.get("seed_value"),
            current_value=float(data.get("current_value", 0.0)),
            growth_percent=float(data.get("growth_percent", 0.0)),
            total_compounded=float(data.get("total_compounded", 0.0)),
            successful_actions=int(data.get("successful_actions", 0)),
            failed_actions=int(data.get("failed_actions", 0)),
            last_action=data.get("last_action", "INIT"),
            lessons=tuple(data.get("lessons", ())),
            entries=tuple(LedgerEntry(**e) for e in data.get("entries", ())),
            milestones_reached=tuple(int(t) for t in data.get("milestones_reached", ())),
            deployments_triggered=tuple(data.get("deployments_triggered", ())),
            updated_at=data.get("updated_at"),
        )


def derive_lesson(ledger: Ledger) -> Optional[str]:
    """Run the pattern rules over the history; return the first lesson not yet learned."""
    candidates: list[str] = []
    entries = ledger.entries

    # Consecutive successful fund moves into one venue
    tail = entries[-CONSECUTIVE_SUCCESS_LESSON:]
    if (
        len(tail) == CONSECUTIVE_SUCCESS_LESSON
        and all(e.success and e.action in {a.value for a in FUND_MOVING} for e in tail)
        and tail[0].venue
        and len({e.venue for e in tail}) == 1
    ):
        candidates.append(
            f"{CONSECUTIVE_SUCCESS_LESSON} consecutive successful moves into {tail[0].venue}"
            " - consider increasing allocation")

    # Repeated failures on one venue inside the window
    failures: dict[str, int] = {}
    for e in entries:
        if not e.success and e.venue:
            failures[e.venue] = failures.get(e.venue, 0) + 1
    for venue, count in failures.items():
        if count >= REPEATED_FAILURE_LESSON:
            candidates.append(f"Repeated failures on {venue} - investigate slippage or venue health")

    # Growth tier crossed
    crossed = [tier for tier, _ in MILESTONES if ledger.growth_percent >= tier]
    if ledger.seed_value and crossed:
        candidates.append(f"Growth reached the {crossed[-1]}% tier - strategy working")

    for lesson in candidates:
        if lesson not in ledger.lessons:
            return lesson
    return None


def performance_summary(ledger: Ledger) -> str:
    return "\n".join([
        "Performance Summary",
        f"Treasury: ${ledger.current_value:.2f}",
        f"Growth: {ledger.growth_percent:+.2f}%",
        f"Compounded: ${ledger.total_compounded:.2f}",
        f"Success rate: {ledger.success_rate * 100:.0f}%",
        f"Lessons: {len(ledger.lessons)}",
    ])


class LedgerStore:
    """Loads, updates and atomically persists the ledger document.

    Not safe for concurrent writers: the orchestrator's single-flight guard
    serializes every call to record() and claim_milestones().
    """

    def __init__(self, path: str, history_window: int = 20) -> None:
        self._path = path
        self._window = history_window
        self._last: Ledger | None = None

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> Ledger:
        """Read the persisted ledger. Read faults fall back, never raise."""
        try:
            data = read_json(self._path)
        except (OSError, ValueError, TypeError) as e:
            log.error("ledger.read_failed", path=self._path, error=str(e))
            return self._last or Ledger()
        if data is None:
            return self._last or Ledger()
        try:
            ledger = Ledger.from_dict(data)
        except (TypeError, ValueError, KeyError) as e:
            log.error("ledger.schema_invalid", path=self._path, error=str(e))
            return self._last or Ledger()
        self._last = ledger
        return ledger

    def _save(self, ledger: Ledger) -> bool:
        self._last = ledger
        try:
            atomic_write_json(self._path, ledger.to_dict())
            return True
        except (OSError, TypeError, ValueError) as e:
            log.error("ledger.write_failed", path=self._path, error=str(e),
                      note="cycle history not persisted")
            return False

    def record(
        self,
        snapshot_before: MarketSnapshot,
        decision: Decision,
        result: ActionResult,
        value_after: float,
        cycle_id: str = "",
    ) -> Ledger:
        """Fold one cycle outcome into the ledger and persist it."""
        ledger = self.load()
        if cycle_id and ledger.has_cycle(cycle_id):
            log.warning("ledger.replay_ignored", cycle_id=cycle_id)
            return ledger

        value_before = snapshot_before.total_value_usd
        pnl_delta = value_after - value_before
        now = datetime.now(timezone.utc).isoformat()

        seed = ledger.seed_value
        if not seed and value_before > 0:
            seed = value_before
            log.info("ledger.seed_captured", seed=round(seed, 2))
        growth = round((value_after - seed) / seed * 100, 4) if seed else 0.0

        successes = ledger.successful_actions
        failures = ledger.failed_actions
        compounded = ledger.total_compounded
        if result.success:
            successes += 1
            if pnl_delta > 0:
                compounded += pnl_delta
        else:
            failures += 1

        notes = decision.reasoning[0] if decision.reasoning else ""
        if not result.success:
            notes = f"failed: {result.error}"
        entry = LedgerEntry(
            cycle_id=cycle_id,
            timestamp=now,
            action=decision.action.value,
            venue=decision.venue,
            success=result.success,
            value_before=round(value_before, 6),
            value_after=round(value_after, 6),
            pnl_delta=format_pnl(pnl_delta),
            tx_ref=result.tx_ref,
            notes=notes,
        )

        deployments = ledger.deployments_triggered
        if decision.action in DEPLOYMENTS and decision.action.value not in deployments:
            deployments = deployments + (decision.action.value,)

        updated = replace(
            ledger,
            seed_value=seed,
            current_value=value_after,
            growth_percent=growth,
            total_compounded=round(compounded, 6),
            successful_actions=successes,
            failed_actions=failures,
            last_action=decision.action.value,
            entries=(ledger.entries + (entry,))[-self._window:],
            deployments_triggered=deployments,
            updated_at=now,
        )

        lesson = derive_lesson(updated)
        if lesson:
            updated = replace(updated, lessons=updated.lessons + (lesson,))
            log.info("ledger.lesson_learned", lesson=lesson)

        self._save(updated)
        log.info("ledger.recorded", action=entry.action, success=entry.success,
                 pnl=entry.pnl_delta, growth_pct=growth)
        return updated

    def claim_milestones(
        self, table: tuple[tuple[int, str], ...] = MILESTONES,
    ) -> list[tuple[int, str]]:
        """Mark every newly crossed growth tier as reached; return those tiers.

        A tier is returned at most once over the ledger's lifetime.
        """
        ledger = self.load()
        if not ledger.seed_value:
            return []
        claimed = [
            (tier, message) for tier, message in table
            if ledger.growth_percent >= tier and tier not in ledger.milestones_reached
        ]
        if claimed:
            reached = tuple(sorted(set(ledger.milestones_reached) | {t for t, _ in claimed}))
            self._save(replace(ledger, milestones_reached=reached))
            log.info("ledger.milestones_claimed", tiers=[t for t, _ in claimed])
        return claimed
