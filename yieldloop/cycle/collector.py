"""Market Snapshot Collector: gathers treasury, venues and chain health.

Every sub-fetch runs concurrently under its own timeout. A failed fetch
becomes a warning plus a safe default; collect() itself never raises.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

import structlog

from yieldloop.shell.chain import RpcWallet
from yieldloop.shell.config import CollectorConfig, SafetyConfig
from yieldloop.shell.contract import (
    EMPTY_TREASURY, MarketSnapshot, Opportunity, Position, TreasuryBalances,
)
from yieldloop.shell.venues import ApyFeed, VenueAdapter

log = structlog.get_logger()


def _describe(e: BaseException) -> str:
    if isinstance(e, asyncio.TimeoutError):
        return "timed out"
    return str(e) or type(e).__name__


class Collector:
    def __init__(
        self,
        wallet: RpcWallet,
        adapters: list[VenueAdapter],
        apy_feed: ApyFeed | None,
        collector_config: CollectorConfig,
        safety_config: SafetyConfig,
        stable_decimals: int = 6,
    ) -> None:
        self._wallet = wallet
        self._adapters = adapters
        self._apy_feed = apy_feed
        self._timeout = collector_config.fetch_timeout_seconds
        self._safety = safety_config
        self._decimals = stable_decimals

    async def _guarded(self, label: str, coro: Awaitable[Any]) -> tuple[Any, str | None]:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout), None
        except Exception as e:
            log.warning("collector.fetch_failed", source=label, error=_describe(e))
            return None, _describe(e)

    async def _treasury(self) -> TreasuryBalances:
        native, stable = await asyncio.gather(
            self._wallet.native_balance(),
            self._wallet.token_balance(self._wallet.stable_token),
        )
        return TreasuryBalances(native_units=native, stable_units=stable, stable_decimals=self._decimals)

    async def probe(self) -> bool:
        """Lightweight liveness check: can the node answer at all."""
        _, error = await self._guarded("probe", self._wallet.block_number())
        return error is None

    async def collect(self) -> MarketSnapshot:
        if self._apy_feed:
            self._apy_feed.invalidate()

        tasks = [
            self._guarded("treasury", self._treasury()),
            self._guarded("gas", self._wallet.gas_price()),
            *(self._guarded(a.name, a.list_opportunities()) for a in self._adapters),
        ]
        (treasury, treasury_err), (gas, gas_err), *venue_results = await asyncio.gather(*tasks)

        warnings: list[str] = []
        if treasury_err:
            warnings.append(f"Treasury fetch failed: {treasury_err}")
            treasury = EMPTY_TREASURY
        if gas_err:
            warnings.append(f"Gas price fetch failed: {gas_err}")
            gas = 0

        opportunities: list[Opportunity] = []
        venues_ok = True
        for adapter, (result, err) in zip(self._adapters, venue_results):
            if err:
                warnings.append(f"{adapter.name.capitalize()} fetch failed: {err}")
                venues_ok = False
                continue
            found, venue_warnings = result
            opportunities.extend(found)
            warnings.extend(venue_warnings)

        positions = tuple(
            Position.from_opportunity(o) for o in opportunities if o.user_stake_units > 0
        )

        # Advisory warnings
        treasury_ok = treasury_err is None
        if treasury_ok and venues_ok and treasury.stable_usd + sum(p.stake_usd for p in positions) < self._safety.low_treasury_usd:
            warnings.append("Treasury balance critically low")
        gas_gwei = gas / 1e9
        if gas_gwei > self._safety.max_gas_gwei:
            warnings.append(f"Gas price high: {gas_gwei:.2f} Gwei")

        snapshot = MarketSnapshot(
            treasury=treasury,
            opportunities=tuple(opportunities),
            positions=positions,
            gas_price_wei=gas,
            warnings=tuple(warnings),
            treasury_ok=treasury_ok,
            venues_ok=venues_ok,
        )
        log.info(
            "collector.snapshot",
            treasury_usd=round(treasury.stable_usd, 2),
            deployed_usd=round(snapshot.deployed_usd, 2),
            opportunities=len(opportunities),
            positions=len(positions),
            best_apy=round(snapshot.best_apy(), 2),
            gas_gwei=round(gas_gwei, 4),
            healthy=snapshot.is_healthy,
        )
        if warnings:
            log.warning("collector.warnings", warnings=list(warnings))
        return snapshot

    async def measure_value(self, fallback: float) -> float:
        """Portfolio value after an action; the pre-action value if any read failed.

        Positions of an unreadable venue are missing from the snapshot; a
        partial total is never returned.
        """
        snapshot = await self.collect()
        if not snapshot.complete:
            log.warning("collector.value_unavailable", fallback=round(fallback, 2),
                        treasury_ok=snapshot.treasury_ok, venues_ok=snapshot.venues_ok)
            return fallback
        return snapshot.total_value_usd
