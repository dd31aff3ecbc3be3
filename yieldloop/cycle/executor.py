"""Action Executor: turns a decision into confirmed on-chain steps.

Handlers are keyed by action. Each step is awaited until confirmed before
the next one is submitted, and the safety gate is consulted before every
fund-moving step. execute() always returns an ActionResult.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

import structlog

from yieldloop.shell.chain import RpcWallet, TransactionReverted, encode_call
from yieldloop.shell.contract import (
    Action, ActionResult, CompoundParams, Decision, DepositParams, MigrateParams, WithdrawParams,
)
from yieldloop.shell.risk import BudgetExceeded, SafetyGate
from yieldloop.shell.venues import VenueAdapter

log = structlog.get_logger()


class InsufficientState(Exception):
    """A multi-leg action is missing one of its legs' venues."""


class StepFailed(Exception):
    """A later step failed after earlier steps were already confirmed."""

    def __init__(self, message: str, tx_ref: Optional[str] = None) -> None:
        self.tx_ref = tx_ref
        super().__init__(message)


Handler = Callable[[Decision], Awaitable[ActionResult]]


class Executor:
    def __init__(self, wallet: RpcWallet, adapters: list[VenueAdapter], gate: SafetyGate) -> None:
        self._wallet = wallet
        self._adapters = adapters
        self._gate = gate
        self._handlers: dict[Action, Handler] = {
            Action.HOLD: self._hold,
            Action.DEPOSIT: self._deposit,
            Action.WITHDRAW: self._withdraw,
            Action.MIGRATE: self._migrate,
            Action.COMPOUND: self._compound,
        }

    def _adapter_for(self, venue_id: str | None) -> VenueAdapter | None:
        for adapter in self._adapters:
            if adapter.knows(venue_id):
                return adapter
        return None

    async def execute(self, decision: Decision) -> ActionResult:
        action = decision.action
        handler = self._handlers.get(action)
        if handler is None:
            log.warning("executor.not_implemented", action=action.value)
            return ActionResult.failed(action, f"Action {action.value} not implemented")

        log.info("executor.start", action=action.value, venue=decision.venue or None,
                 amount_usd=decision.amount_usd)
        try:
            result = await handler(decision)
        except BudgetExceeded as e:
            log.error("executor.budget_exceeded", action=action.value, error=str(e))
            return ActionResult.failed(action, str(e), safety_violation=True)
        except InsufficientState as e:
            log.error("executor.insufficient_state", action=action.value, error=str(e))
            return ActionResult.failed(action, str(e))
        except NotImplementedError as e:
            log.warning("executor.unsupported", action=action.value, error=str(e))
            return ActionResult.failed(action, str(e) or f"Action {action.value} not implemented")
        except StepFailed as e:
            log.error("executor.step_failed", action=action.value, error=str(e), tx=e.tx_ref)
            return ActionResult.failed(action, str(e), tx_ref=e.tx_ref)
        except TransactionReverted as e:
            log.error("executor.reverted", action=action.value, tx=e.tx_hash)
            return ActionResult.failed(action, str(e), tx_ref=e.tx_hash)
        except Exception as e:
            log.exception("executor.failed", action=action.value)
            return ActionResult.failed(action, str(e) or type(e).__name__)

        log.info("executor.done", action=action.value, success=result.success, tx=result.tx_ref)
        return result

    async def execute_batch(self, decisions: list[Decision]) -> list[ActionResult]:
        """Execute in order, stopping at the first failure."""
        results: list[ActionResult] = []
        for decision in decisions:
            result = await self.execute(decision)
            results.append(result)
            if not result.success:
                log.warning("executor.batch_halted", failed=decision.action.value,
                            completed=len(results) - 1, skipped=len(decisions) - len(results))
                break
        return results

    # --- Handlers ---

    async def _hold(self, decision: Decision) -> ActionResult:
        return ActionResult.ok(Action.HOLD)

    async def _deposit(self, decision: Decision) -> ActionResult:
        p: DepositParams = decision.params
        adapter = self._adapter_for(p.target)
        if adapter is None:
            raise InsufficientState(f"Insufficient state: unknown deposit venue {p.target}")
        tx_ref = await self._deposit_sequence(decision, adapter, p.target, p.amount_units, p.amount_usd)
        return ActionResult.ok(Action.DEPOSIT, tx_ref)

    async def _withdraw(self, decision: Decision) -> ActionResult:
        p: WithdrawParams = decision.params
        adapter = self._adapter_for(p.source)
        if adapter is None:
            raise InsufficientState(f"Insufficient state: unknown withdraw venue {p.source}")
        tx_ref = await self._withdraw_step(decision, adapter, p.source, p.amount_units, p.amount_usd)
        return ActionResult.ok(Action.WITHDRAW, tx_ref)

    async def _migrate(self, decision: Decision) -> ActionResult:
        p: MigrateParams = decision.params
        source = self._adapter_for(p.source)
        target = self._adapter_for(p.target)
        if source is None or target is None:
            raise InsufficientState(
                "Insufficient state: migration needs both source and target venues "
                f"(source={p.source or 'unknown'}, target={p.target or 'unknown'})")

        withdraw_ref = await self._withdraw_step(decision, source, p.source, p.amount_units, p.amount_usd)
        try:
            deposit_ref = await self._deposit_sequence(decision, target, p.target, p.amount_units, p.amount_usd)
        except Exception as e:
            # The withdrawal is confirmed; funds stay in the wallet
            raise StepFailed(
                f"Migration deposit leg failed after withdrawal {withdraw_ref}: {e}", withdraw_ref) from e
        return ActionResult.ok(Action.MIGRATE, deposit_ref)

    async def _compound(self, decision: Decision) -> ActionResult:
        p: CompoundParams = decision.params
        last_ref = None
        for venue_id in p.venues:
            adapter = self._adapter_for(venue_id)
            if adapter is None:
                raise InsufficientState(f"Insufficient state: unknown reward venue {venue_id}")
            to, data = adapter.encode_claim(venue_id, self._wallet.address)
            last_ref = await self._wallet.send_and_confirm(to, data)
        return ActionResult.ok(Action.COMPOUND, last_ref)

    # --- Steps ---

    async def _withdraw_step(self, decision: Decision, adapter: VenueAdapter, venue_id: str,
                             amount_units: int, amount_usd: float) -> str:
        owner = self._wallet.address
        to, data = adapter.encode_withdraw(venue_id, amount_units, owner, owner)
        self._gate.authorize(decision, amount_usd, step="withdraw")
        tx_ref = await self._wallet.send_and_confirm(to, data)
        log.info("executor.withdrawn", venue=venue_id, amount_usd=round(amount_usd, 2), tx=tx_ref)
        return tx_ref

    async def _deposit_sequence(self, decision: Decision, adapter: VenueAdapter, venue_id: str,
                                amount_units: int, amount_usd: float) -> str:
        """Approve, deposit, revoke. The revoke runs whenever an approval was sent."""
        to, data = adapter.encode_deposit(venue_id, amount_units, self._wallet.address)
        token = self._wallet.stable_token
        spender = adapter.spender(venue_id)

        self._gate.authorize(decision, amount_usd, step="approve")
        approve_ref = await self._wallet.send_transaction(
            token, encode_call("approve(address,uint256)", spender, amount_units))
        try:
            await self._wallet.wait_for_receipt(approve_ref)
            self._gate.authorize(decision, amount_usd, step="deposit")
            tx_ref = await self._wallet.send_and_confirm(to, data)
            log.info("executor.deposited", venue=venue_id, amount_usd=round(amount_usd, 2), tx=tx_ref)
            return tx_ref
        finally:
            await self._revoke(token, spender)

    async def _revoke(self, token: str, spender: str) -> None:
        try:
            ref = await self._wallet.send_and_confirm(
                token, encode_call("approve(address,uint256)", spender, 0))
            log.info("executor.allowance_revoked", spender=spender, tx=ref)
        except Exception as e:
            log.error("executor.revoke_failed", spender=spender, error=str(e),
                      note="standing allowance needs manual revoke")
