"""Immutable records passed between cycle stages.

Collector -> MarketSnapshot -> Decision -> ActionResult -> Ledger -> StatusUpdate.
Each stage receives the previous stage's record and never mutates it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


# --- Enums ---

class Action(Enum):
    HOLD = "HOLD"
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    MIGRATE = "MIGRATE"
    COMPOUND = "COMPOUND"
    DEPLOY_TOKEN = "DEPLOY_TOKEN"
    DEPLOY_VAULT = "DEPLOY_VAULT"


FUND_MOVING = frozenset({Action.DEPOSIT, Action.WITHDRAW, Action.MIGRATE})
DEPLOYMENTS = frozenset({Action.DEPLOY_TOKEN, Action.DEPLOY_VAULT})


class Priority(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class VenueType(Enum):
    LENDING = "LENDING"        # low-risk single-asset vault
    LIQUIDITY = "LIQUIDITY"    # risk-bearing two-asset pool


class UpdateKind(Enum):
    HEARTBEAT = "HEARTBEAT"
    ACTION = "ACTION"
    MILESTONE = "MILESTONE"
    ALERT = "ALERT"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Snapshot (Collector -> Decision Engine) ---

@dataclass(frozen=True)
class TreasuryBalances:
    native_units: int           # wei
    stable_units: int           # smallest stable-token unit
    stable_decimals: int = 6

    @property
    def stable_usd(self) -> float:
        return self.stable_units / 10 ** self.stable_decimals

    @property
    def native_formatted(self) -> float:
        return self.native_units / 10 ** 18

    def usd_to_units(self, usd: float) -> int:
        return int(usd * 10 ** self.stable_decimals)


EMPTY_TREASURY = TreasuryBalances(native_units=0, stable_units=0)


@dataclass(frozen=True)
class Opportunity:
    venue_id: str               # contract address
    name: str
    venue_type: VenueType
    apy: float                  # percentage points
    tvl_usd: float
    user_stake_units: int = 0
    user_stake_usd: float = 0.0
    pending_rewards_usd: float = 0.0
    protocol: str = ""


@dataclass(frozen=True)
class Position:
    venue_id: str
    name: str
    venue_type: VenueType
    apy: float
    stake_units: int
    stake_usd: float
    pending_rewards_usd: float = 0.0
    protocol: str = ""

    @classmethod
    def from_opportunity(cls, opp: Opportunity) -> Position:
        return cls(
            venue_id=opp.venue_id,
            name=opp.name,
            venue_type=opp.venue_type,
            apy=opp.apy,
            stake_units=opp.user_stake_units,
            stake_usd=opp.user_stake_usd,
            pending_rewards_usd=opp.pending_rewards_usd,
            protocol=opp.protocol,
        )


@dataclass(frozen=True)
class MarketSnapshot:
    treasury: TreasuryBalances
    opportunities: tuple[Opportunity, ...]
    positions: tuple[Position, ...]
    gas_price_wei: int
    warnings: tuple[str, ...]
    treasury_ok: bool
    venues_ok: bool = True
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_healthy(self) -> bool:
        return not self.warnings and self.treasury_ok and self.venues_ok

    @property
    def complete(self) -> bool:
        """Every balance and venue read succeeded, so total_value_usd is trustworthy."""
        return self.treasury_ok and self.venues_ok

    @property
    def gas_price_gwei(self) -> float:
        return self.gas_price_wei / 1e9

    @property
    def deployed_usd(self) -> float:
        return sum(p.stake_usd for p in self.positions)

    @property
    def total_value_usd(self) -> float:
        """Wallet stable balance plus everything deployed into venues."""
        return self.treasury.stable_usd + self.deployed_usd

    def of_type(self, venue_type: VenueType) -> list[Opportunity]:
        return [o for o in self.opportunities if o.venue_type == venue_type]

    def position_for(self, venue_type: VenueType) -> Optional[Position]:
        for p in self.positions:
            if p.venue_type == venue_type:
                return p
        return None

    def best_apy(self) -> float:
        return max((o.apy for o in self.opportunities), default=0.0)


# --- Decision (Decision Engine -> Safety Gate / Executor) ---

@dataclass(frozen=True)
class DepositParams:
    target: str
    target_name: str
    venue_type: VenueType
    amount_units: int
    amount_usd: float
    expected_apy: float


@dataclass(frozen=True)
class WithdrawParams:
    source: str
    source_name: str
    venue_type: VenueType
    amount_units: int
    amount_usd: float


@dataclass(frozen=True)
class MigrateParams:
    source: Optional[str]
    source_name: str
    target: str
    target_name: str
    venue_type: VenueType
    amount_units: int
    amount_usd: float
    expected_apy: float
    net_benefit: float          # APY gain in percentage points


@dataclass(frozen=True)
class CompoundParams:
    venues: tuple[str, ...]
    venue_type: VenueType
    pending_usd: float


@dataclass(frozen=True)
class DeployParams:
    tier: float                 # growth fraction that triggered the deployment
    growth: float


ActionParams = Union[DepositParams, WithdrawParams, MigrateParams, CompoundParams, DeployParams]

PARAMS_FOR_ACTION: dict[Action, Optional[type]] = {
    Action.HOLD: None,
    Action.DEPOSIT: DepositParams,
    Action.WITHDRAW: WithdrawParams,
    Action.MIGRATE: MigrateParams,
    Action.COMPOUND: CompoundParams,
    Action.DEPLOY_TOKEN: DeployParams,
    Action.DEPLOY_VAULT: DeployParams,
}


@dataclass(frozen=True)
class Decision:
    action: Action
    reasoning: tuple[str, ...]
    confidence: float
    priority: Priority
    params: Optional[ActionParams] = None

    def __post_init__(self):
        expected = PARAMS_FOR_ACTION[self.action]
        if expected is None:
            if self.params is not None:
                raise ValueError(f"{self.action.value} takes no parameters")
        elif not isinstance(self.params, expected):
            raise ValueError(
                f"{self.action.value} requires {expected.__name__}, got {type(self.params).__name__}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        if self.action in FUND_MOVING:
            target = getattr(self.params, "target", None) or getattr(self.params, "source", None)
            if not target:
                raise ValueError(f"{self.action.value} requires a target venue")
            if self.params.amount_units <= 0:
                raise ValueError(f"{self.action.value} requires a positive amount")

    @property
    def venue(self) -> str:
        """Venue the action touches, for ledger entries and narration."""
        p = self.params
        if isinstance(p, (DepositParams, MigrateParams)):
            return p.target_name
        if isinstance(p, WithdrawParams):
            return p.source_name
        if isinstance(p, CompoundParams):
            return ",".join(p.venues)
        return ""

    @property
    def amount_usd(self) -> Optional[float]:
        return getattr(self.params, "amount_usd", None)


# --- Result (Executor -> Ledger) ---

@dataclass(frozen=True)
class ActionResult:
    success: bool
    action: Action
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    safety_violation: bool = False     # blocked by the spend ceiling
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.success and (self.error or self.safety_violation):
            raise ValueError("successful result cannot carry an error")
        if not self.success and not self.error:
            raise ValueError("failed result requires an error message")

    @classmethod
    def ok(cls, action: Action, tx_ref: Optional[str] = None) -> ActionResult:
        return cls(success=True, action=action, tx_ref=tx_ref)

    @classmethod
    def failed(
        cls, action: Action, error: str, tx_ref: Optional[str] = None, safety_violation: bool = False,
    ) -> ActionResult:
        return cls(success=False, action=action, tx_ref=tx_ref, error=error or "unknown error",
                   safety_violation=safety_violation)


# --- Narration (Narrator -> observers) ---

@dataclass(frozen=True)
class StatusUpdate:
    kind: UpdateKind
    title: str
    body: str
    action: str
    stats: dict[str, str]
    links: dict[str, str]
    details: dict
    milestone: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dashboard(self) -> dict:
        """Payload accepted by the dashboard /api/update endpoint."""
        payload = {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "details": self.details,
            "narrative": self.body,
        }
        if self.milestone:
            payload["milestone"] = self.milestone
        return payload
