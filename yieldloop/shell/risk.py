"""Safety Gate: hard spend ceiling on every fund-moving or deploying call.

Part of the rigid shell. The cycle cannot loosen these limits at runtime.
"""

from __future__ import annotations

import structlog

from yieldloop.shell.config import SafetyConfig
from yieldloop.shell.contract import Decision

log = structlog.get_logger()


class BudgetExceeded(Exception):
    """Estimated cost of a single external call is above the per-cycle ceiling."""

    def __init__(self, estimated_cost_usd: float, ceiling_usd: float, step: str = "") -> None:
        self.estimated_cost_usd = estimated_cost_usd
        self.ceiling_usd = ceiling_usd
        self.step = step
        where = f" at step '{step}'" if step else ""
        super().__init__(
            f"Budget exceeded{where}: ${estimated_cost_usd:.2f} > ceiling ${ceiling_usd:.2f}")


class SafetyGate:
    """Checks one external call against the spend ceiling.

    Multi-step actions call authorize() again before every step. A rejection
    abandons the action for this cycle; nothing is resubmitted smaller.
    """

    def __init__(self, config: SafetyConfig) -> None:
        self._config = config

    @property
    def ceiling_usd(self) -> float:
        return self._config.max_cycle_spend_usd

    def authorize(self, decision: Decision, estimated_cost_usd: float, step: str = "") -> None:
        """Raise BudgetExceeded when estimated_cost_usd > ceiling. Equal passes."""
        if estimated_cost_usd > self._config.max_cycle_spend_usd:
            log.error(
                "risk.budget_exceeded",
                action=decision.action.value,
                step=step or None,
                estimated_cost_usd=round(estimated_cost_usd, 6),
                ceiling_usd=self._config.max_cycle_spend_usd,
            )
            raise BudgetExceeded(estimated_cost_usd, self._config.max_cycle_spend_usd, step)
        log.debug("risk.authorized", action=decision.action.value, step=step or None,
                  estimated_cost_usd=round(estimated_cost_usd, 6))
