"""Decision Engine: snapshot in, one ranked action out.

Pure and deterministic. No I/O, no hidden state; everything it needs arrives
in the snapshot, the policy and the read-only ledger. Rules are evaluated in
a fixed order and the first match wins, so safety and growth milestones
always dominate yield chasing. The reasoning trail accumulates across rules
and is never discarded.
"""

from __future__ import annotations

import math
from decimal import ROUND_DOWN, Decimal
from typing import Optional

import structlog

from yieldloop.shell.config import PolicyConfig
from yieldloop.shell.contract import (
    Action, CompoundParams, Decision, DeployParams, DepositParams, MarketSnapshot,
    MigrateParams, Opportunity, Priority, VenueType,
)
from yieldloop.shell.ledger import Ledger

log = structlog.get_logger()


def divergence_loss(price_move: float) -> float:
    """Constant-product pool divergence loss for a relative price move.

    |2*sqrt(1+p) / (2+p) - 1| with p as a fraction (0.10 = +10%). This is a
    policy estimate from an assumed move, not a prediction from observed
    volatility.
    """
    return abs(2 * math.sqrt(1 + price_move) / (2 + price_move) - 1)


def _fraction_of(units: int, fraction: float) -> int:
    return int((Decimal(units) * Decimal(str(fraction))).to_integral_value(rounding=ROUND_DOWN))


def _best(opportunities: list[Opportunity], min_tvl: float | None = None,
          exclude: str | None = None) -> Optional[Opportunity]:
    pool = [
        o for o in opportunities
        if (min_tvl is None or o.tvl_usd >= min_tvl)
        and (exclude is None or o.venue_id.lower() != exclude.lower())
    ]
    return max(pool, key=lambda o: o.apy, default=None)


def _gap_lines(snapshot: MarketSnapshot, threshold: float) -> list[str]:
    current = snapshot.positions[0].apy if snapshot.positions else 0.0
    return [
        f"Current APY: {current:.2f}%",
        f"Best available: {snapshot.best_apy():.2f}%",
        f"No significant improvement found (threshold: {threshold}%)",
    ]


def _hold(reasoning: list[str]) -> Decision:
    return Decision(action=Action.HOLD, reasoning=tuple(reasoning), confidence=1.0, priority=Priority.LOW)


def decide(snapshot: MarketSnapshot, policy: PolicyConfig, ledger: Ledger | None = None) -> Decision:
    """Evaluate the rule ladder and return exactly one decision."""
    decision = _evaluate(snapshot, policy, ledger)
    log.info(
        "decide.decision",
        action=decision.action.value,
        confidence=decision.confidence,
        priority=decision.priority.value,
        reasoning=list(decision.reasoning),
    )
    return decision


def _evaluate(snapshot: MarketSnapshot, policy: PolicyConfig, ledger: Ledger | None) -> Decision:
    reasoning: list[str] = []
    threshold = policy.apy_delta_threshold_pct

    # 1. Health
    if not snapshot.is_healthy:
        reasoning.append("System unhealthy - holding position")
        if not snapshot.treasury_ok:
            reasoning.append("Treasury data unavailable")
        reasoning.extend(f"Warning: {w}" for w in snapshot.warnings)
        reasoning.extend(_gap_lines(snapshot, threshold))
        return _hold(reasoning)

    # 2. Evolution milestones (one-shot per tier)
    milestone = _check_milestones(snapshot, policy, ledger)
    if milestone:
        return milestone

    lending = snapshot.of_type(VenueType.LENDING)
    liquidity = snapshot.of_type(VenueType.LIQUIDITY)

    # 3. Migration within a venue type
    for position in snapshot.positions:
        candidate = _best(snapshot.of_type(position.venue_type), policy.min_tvl_usd, exclude=position.venue_id)
        if candidate is None:
            continue
        delta = candidate.apy - position.apy
        if delta > threshold:
            reasoning += [
                f"Current position {position.name}: {position.apy:.2f}% APY",
                f"Better venue available: {candidate.name} at {candidate.apy:.2f}% APY",
                f"Delta: +{delta:.2f}% exceeds {threshold}% threshold",
            ]
            return Decision(
                action=Action.MIGRATE,
                reasoning=tuple(reasoning),
                confidence=0.85,
                priority=Priority.HIGH,
                params=MigrateParams(
                    source=position.venue_id,
                    source_name=position.name,
                    target=candidate.venue_id,
                    target_name=candidate.name,
                    venue_type=position.venue_type,
                    amount_units=position.stake_units,
                    amount_usd=position.stake_usd,
                    expected_apy=candidate.apy,
                    net_benefit=delta,
                ),
            )

    best_lending = _best(lending, policy.min_tvl_usd)
    treasury = snapshot.treasury

    # 4. Cold start
    if not snapshot.positions and best_lending and treasury.stable_usd > policy.min_usable_treasury_usd:
        amount_units = _fraction_of(treasury.stable_units, policy.deposit_fraction)
        if amount_units > 0:
            reasoning += [
                "No current position",
                f"Treasury: ${treasury.stable_usd:.2f} available",
                f"Best lending venue: {best_lending.name} at {best_lending.apy:.2f}% APY",
            ]
            return Decision(
                action=Action.DEPOSIT,
                reasoning=tuple(reasoning),
                confidence=0.9,
                priority=Priority.HIGH,
                params=DepositParams(
                    target=best_lending.venue_id,
                    target_name=best_lending.name,
                    venue_type=VenueType.LENDING,
                    amount_units=amount_units,
                    amount_usd=amount_units / 10 ** treasury.stable_decimals,
                    expected_apy=best_lending.apy,
                ),
            )

    # 5. Risk-adjusted cross-venue comparison
    best_pool = _best(liquidity, policy.min_tvl_usd)
    if best_pool and best_lending:
        move = policy.assumed_price_move_pct / 100
        loss_pct = divergence_loss(move) * 100
        effective = best_pool.apy - loss_pct
        if effective > best_lending.apy + threshold:
            reasoning += [
                f"Pool {best_pool.name}: {best_pool.apy:.2f}% APY",
                f"Estimated divergence loss ({policy.assumed_price_move_pct:g}% move): {loss_pct:.2f}%",
                f"Effective APY: {effective:.2f}%",
                f"Still {effective - best_lending.apy:.2f}% better than lending",
            ]
            total = snapshot.total_value_usd
            exposure_usd = sum(p.stake_usd for p in snapshot.positions if p.venue_type == VenueType.LIQUIDITY)
            ratio = exposure_usd / total if total > 0 else 0.0
            headroom_usd = policy.max_liquidity_allocation * total - exposure_usd
            amount_units = min(
                _fraction_of(treasury.stable_units, policy.deposit_fraction),
                treasury.usd_to_units(max(headroom_usd, 0.0)),
            )
            if ratio < policy.max_liquidity_allocation and amount_units > 0:
                return Decision(
                    action=Action.DEPOSIT,
                    reasoning=tuple(reasoning),
                    confidence=0.7,
                    priority=Priority.MEDIUM,
                    params=DepositParams(
                        target=best_pool.venue_id,
                        target_name=best_pool.name,
                        venue_type=VenueType.LIQUIDITY,
                        amount_units=amount_units,
                        amount_usd=amount_units / 10 ** treasury.stable_decimals,
                        expected_apy=best_pool.apy,
                    ),
                )
            if ratio >= policy.max_liquidity_allocation or headroom_usd <= 0:
                reasoning.append(f"LP allocation at max ({ratio * 100:.0f}%)")
            else:
                reasoning.append("No idle stable balance to add to the pool")

    # 6. Rewards
    rewarded = [p for p in snapshot.positions if p.pending_rewards_usd > policy.min_reward_usd]
    if rewarded:
        pending = sum(p.pending_rewards_usd for p in rewarded)
        reasoning.append(f"Pending rewards available for compounding: ${pending:.2f}")
        return Decision(
            action=Action.COMPOUND,
            reasoning=tuple(reasoning),
            confidence=0.95,
            priority=Priority.MEDIUM,
            params=CompoundParams(
                venues=tuple(p.venue_id for p in rewarded),
                venue_type=rewarded[0].venue_type,
                pending_usd=pending,
            ),
        )

    # 7. Default
    reasoning.extend(_gap_lines(snapshot, threshold))
    return _hold(reasoning)


def _check_milestones(snapshot: MarketSnapshot, policy: PolicyConfig,
                      ledger: Ledger | None) -> Optional[Decision]:
    if ledger is None or not ledger.seed_value or ledger.seed_value <= 0:
        return None
    seed = ledger.seed_value
    growth = (snapshot.total_value_usd - seed) / seed
    triggered = set(ledger.deployments_triggered)

    for action, tier, label in (
        (Action.DEPLOY_VAULT, policy.deploy_vault_growth, "Vault"),
        (Action.DEPLOY_TOKEN, policy.deploy_token_growth, "Token"),
    ):
        if growth >= tier and action.value not in triggered:
            return Decision(
                action=action,
                reasoning=(
                    f"Growth: +{growth * 100:.0f}% over ${seed:.2f} seed",
                    f"{label} deployment threshold ({tier * 100:g}%) reached",
                ),
                confidence=0.8,
                priority=Priority.HIGH,
                params=DeployParams(tier=tier, growth=growth),
            )
    return None
