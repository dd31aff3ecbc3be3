"""Cycle Orchestrator: one perceive -> decide -> act -> evolve -> narrate pass.

State machine IDLE -> RUNNING -> IDLE. A trigger that arrives while a cycle
is in flight is dropped, not queued. Faults anywhere in the cycle are caught
here so the process and the next scheduled cycle are never affected.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import structlog

from yieldloop.cycle.decide import decide
from yieldloop.shell.contract import Action, ActionResult, Decision
from yieldloop.shell.ledger import MILESTONES, Ledger, LedgerStore, performance_summary
from yieldloop.utils.logging import bind_cycle, clear_cycle

if TYPE_CHECKING:
    from yieldloop.cycle.collector import Collector
    from yieldloop.cycle.executor import Executor
    from yieldloop.cycle.narrator import Narrator
    from yieldloop.shell.activity import ActivityLogger
    from yieldloop.shell.config import PolicyConfig

log = structlog.get_logger()


@dataclass(frozen=True)
class CycleOutcome:
    cycle_id: Optional[str]
    status: str                 # completed, unhealthy, probe_failed, skipped, error
    decision: Optional[Decision] = None
    result: Optional[ActionResult] = None
    ledger: Optional[Ledger] = None
    published: bool = False
    milestones: tuple[int, ...] = ()
    error: Optional[str] = None


class CycleState:
    """Cross-cycle state. Holding the lock is the RUNNING state."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._run_count = 0
        self._last_run: datetime | None = None

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def begin(self) -> int:
        self._run_count += 1
        return self._run_count

    def finish(self) -> None:
        self._last_run = datetime.now(timezone.utc)

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def run_count(self) -> int:
        return self._run_count

    @property
    def last_run(self) -> datetime | None:
        return self._last_run


def _new_cycle_id() -> str:
    return f"{datetime.now(timezone.utc):%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:6]}"


class CycleOrchestrator:
    def __init__(
        self,
        collector: Collector,
        executor: Executor,
        ledger: LedgerStore,
        narrator: Narrator,
        policy: PolicyConfig,
        activity: ActivityLogger | None = None,
        milestones: tuple[tuple[int, str], ...] = MILESTONES,
    ) -> None:
        self._collector = collector
        self._executor = executor
        self._ledger = ledger
        self._narrator = narrator
        self._policy = policy
        self._activity = activity
        self._milestones = milestones
        self._state = CycleState()

    @property
    def state(self) -> CycleState:
        return self._state

    async def wait_idle(self, timeout: float) -> bool:
        """Wait for an in-flight cycle to finish. False if still running at timeout."""
        deadline = time.monotonic() + timeout
        while self._state.running:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(0.1)
        return True

    async def _record_activity(self, method: str, *args, **kwargs) -> None:
        if not self._activity:
            return
        try:
            await getattr(self._activity, method)(*args, **kwargs)
        except Exception as e:
            log.warning("cycle.activity_failed", method=method, error=str(e))

    async def run_cycle(self, trigger: str = "scheduled") -> CycleOutcome:
        # Dropped, not queued: the check and the acquire run without yielding
        if self._state.running:
            log.info("cycle.skipped", trigger=trigger, reason="cycle already running")
            return CycleOutcome(cycle_id=None, status="skipped")
        async with self._state.lock:
            return await self._guarded_cycle(trigger)

    async def _guarded_cycle(self, trigger: str) -> CycleOutcome:
        run = self._state.begin()
        cycle_id = _new_cycle_id()
        bind_cycle(cycle_id, run, trigger)
        started = time.monotonic()
        log.info("cycle.start")
        try:
            await self._record_activity("cycle_started", cycle_id, trigger)
            outcome = await self._run(cycle_id)
        except Exception as e:
            log.exception("cycle.failed")
            published = await self._narrator.publish(
                self._narrator.alert("cycle_error", f"Cycle {cycle_id} failed and was skipped: {e}"))
            await self._record_activity("cycle_finished", cycle_id, "error", error=str(e))
            await self._record_activity("system", f"Cycle {cycle_id} failed: {e}", "error")
            outcome = CycleOutcome(cycle_id=cycle_id, status="error", published=published, error=str(e))
        finally:
            self._state.finish()
            log.info("cycle.end", duration_s=round(time.monotonic() - started, 2))
            clear_cycle()
        return outcome

    async def _run(self, cycle_id: str) -> CycleOutcome:
        # Liveness
        if not await self._collector.probe():
            log.error("cycle.probe_failed")
            published = await self._narrator.publish(self._narrator.alert(
                "probe_failed", "Health check failed: chain node unreachable. Cycle skipped."))
            await self._record_activity("cycle_finished", cycle_id, "probe_failed")
            await self._record_activity("cycle", "Health probe failed, cycle skipped", "warning")
            return CycleOutcome(cycle_id=cycle_id, status="probe_failed", published=published)

        # Perceive + decide
        snapshot = await self._collector.collect()
        ledger = await asyncio.to_thread(self._ledger.load)
        decision = decide(snapshot, self._policy, ledger)
        value_before = snapshot.total_value_usd

        if not snapshot.is_healthy:
            result = ActionResult.ok(Action.HOLD)
            known = value_before if snapshot.complete else None
            published = await self._narrator.publish(
                self._narrator.narrate(decision, result, ledger, snapshot))
            await self._record_activity(
                "cycle_finished", cycle_id, "unhealthy", action=decision.action.value,
                success=True, value_before=known, value_after=known)
            await self._record_activity(
                "cycle", f"Unhealthy snapshot, holding: {'; '.join(snapshot.warnings)}", "warning",
                detail={"warnings": list(snapshot.warnings)})
            return CycleOutcome(cycle_id=cycle_id, status="unhealthy", decision=decision,
                                result=result, ledger=ledger, published=published)

        # Act
        result = await self._executor.execute(decision)
        if result.safety_violation:
            log.error("cycle.safety_violation", action=decision.action.value, error=result.error)
            await self._record_activity(
                "risk", f"Safety gate blocked {decision.action.value}: {result.error}", "error",
                detail={"venue": decision.venue, "amount_usd": decision.amount_usd})
        if decision.action == Action.HOLD:
            value_after = value_before
        else:
            value_after = await self._collector.measure_value(value_before)

        # Evolve
        ledger = await asyncio.to_thread(
            self._ledger.record, snapshot, decision, result, value_after, cycle_id)
        log.info("cycle.performance", summary=performance_summary(ledger))

        # Narrate
        published = await self._narrator.publish(
            self._narrator.narrate(decision, result, ledger, snapshot))

        # Milestones, each at most once over the ledger's lifetime
        claimed = await asyncio.to_thread(self._ledger.claim_milestones, self._milestones)
        for tier, message in claimed:
            log.info("cycle.milestone", tier=tier)
            await self._narrator.publish(self._narrator.milestone(tier, message, ledger))
            await self._record_activity("ledger", f"Milestone reached: {message}")

        await self._record_activity(
            "cycle_finished", cycle_id, "completed", action=decision.action.value,
            success=result.success, value_before=value_before, value_after=value_after,
            error=result.error)
        if decision.action != Action.HOLD:
            summary = f"{decision.action.value} {decision.venue or ''}".strip()
            if result.success:
                await self._record_activity("action", f"{summary} ok", detail={"tx": result.tx_ref})
            else:
                await self._record_activity("action", f"{summary} failed: {result.error}", "error")

        return CycleOutcome(
            cycle_id=cycle_id, status="completed", decision=decision, result=result,
            ledger=ledger, published=published, milestones=tuple(t for t, _ in claimed),
        )
