"""Protocol adapters for yield venues plus the DeFiLlama APY feed.

Each adapter lists its venues as Opportunity records and encodes the calls
the executor submits. Adapters never submit anything themselves.
"""

from __future__ import annotations

import time
from typing import Optional

import httpx
import structlog

from yieldloop.shell.chain import RpcWallet, decode_uint, decode_words, encode_call
from yieldloop.shell.config import VenueConfig, VenuesConfig
from yieldloop.shell.contract import Opportunity, VenueType

log = structlog.get_logger()

APY_CACHE_SECONDS = 300


class ApyFeed:
    """Yield aggregator lookup with last-known and placeholder fallbacks.

    The pool list is fetched at most once per cache window, so one cycle
    issues one request regardless of how many venues it prices.
    """

    def __init__(self, config: VenuesConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._pools: list[dict] | None = None
        self._fetched_at = 0.0
        self._fetch_error: str | None = None
        self._last_known: dict[str, float] = {}

    async def close(self) -> None:
        await self._client.aclose()

    def invalidate(self) -> None:
        self._pools = None
        self._fetch_error = None

    async def _load(self) -> list[dict] | None:
        fresh = time.monotonic() - self._fetched_at < APY_CACHE_SECONDS
        if (self._pools is not None or self._fetch_error) and fresh:
            return self._pools
        self._fetched_at = time.monotonic()
        try:
            resp = await self._client.get(self._config.apy_feed_url)
            resp.raise_for_status()
            self._pools = resp.json().get("data", [])
            self._fetch_error = None
            log.debug("venues.apy_feed_loaded", pools=len(self._pools))
        except (httpx.HTTPError, ValueError) as e:
            self._pools = None
            self._fetch_error = str(e) or type(e).__name__
            log.warning("venues.apy_feed_failed", error=self._fetch_error)
        return self._pools

    async def lookup(self, address: str, placeholder: float) -> tuple[float, Optional[str]]:
        """Return (apy, warning). warning is None when the live figure was found."""
        key = address.lower()
        chain = self._config.apy_chain.lower()
        pools = await self._load()
        if pools is not None:
            for pool in pools:
                if key in str(pool.get("pool", "")).lower() and str(pool.get("chain", "")).lower() == chain:
                    apy = float(pool.get("apy") or 0.0)
                    self._last_known[key] = apy
                    return apy, None
            reason = "venue not listed by aggregator"
        else:
            reason = f"aggregator unavailable ({self._fetch_error})"

        if key in self._last_known:
            apy = self._last_known[key]
            return apy, f"APY for {address} is last-known {apy:.2f}%: {reason}"
        return placeholder, f"APY for {address} is placeholder {placeholder:.2f}%: {reason}"


class VenueAdapter:
    """Common surface for one family of venues."""

    venue_type: VenueType
    supports_claims = False

    def __init__(self, venues: list[VenueConfig], wallet: RpcWallet, apy_feed: ApyFeed,
                 placeholder_apy: float, stable_decimals: int = 6) -> None:
        self._venues = {v.address.lower(): v for v in venues}
        self._wallet = wallet
        self._apy = apy_feed
        self._placeholder = placeholder_apy
        self._decimals = stable_decimals

    @property
    def name(self) -> str:
        return self.venue_type.value.lower()

    def knows(self, venue_id: str | None) -> bool:
        return bool(venue_id) and venue_id.lower() in self._venues

    def _usd(self, units: int) -> float:
        return units / 10 ** self._decimals

    async def list_opportunities(self) -> tuple[list[Opportunity], list[str]]:
        raise NotImplementedError

    def spender(self, venue_id: str) -> str:
        """Address that must hold the allowance for a deposit."""
        return venue_id

    def encode_deposit(self, venue_id: str, amount_units: int, receiver: str) -> tuple[str, str]:
        raise NotImplementedError(f"{self.name} deposits are not supported")

    def encode_withdraw(self, venue_id: str, amount_units: int, receiver: str, owner: str) -> tuple[str, str]:
        raise NotImplementedError(f"{self.name} withdrawals are not supported")

    def encode_claim(self, venue_id: str, owner: str) -> tuple[str, str]:
        raise NotImplementedError(f"{self.name} reward claims are not supported")


class LendingVaultAdapter(VenueAdapter):
    """ERC-4626 single-asset vaults (Morpho and similar)."""

    venue_type = VenueType.LENDING

    async def list_opportunities(self) -> tuple[list[Opportunity], list[str]]:
        opportunities: list[Opportunity] = []
        warnings: list[str] = []
        owner = self._wallet.address
        for venue in self._venues.values():
            total_assets = decode_uint(await self._wallet.call(venue.address, encode_call("totalAssets()")))
            stake_units = 0
            if owner:
                shares = await self._wallet.token_balance(venue.address, owner)
                if shares:
                    stake_units = decode_uint(await self._wallet.call(
                        venue.address, encode_call("convertToAssets(uint256)", shares)))
            apy, warning = await self._apy.lookup(venue.address, self._placeholder)
            if warning:
                warnings.append(warning)
            opportunities.append(Opportunity(
                venue_id=venue.address,
                name=venue.name,
                venue_type=self.venue_type,
                apy=apy,
                tvl_usd=self._usd(total_assets),
                user_stake_units=stake_units,
                user_stake_usd=self._usd(stake_units),
                pending_rewards_usd=0.0,
                protocol=venue.protocol,
            ))
        return opportunities, warnings

    def encode_deposit(self, venue_id: str, amount_units: int, receiver: str) -> tuple[str, str]:
        return venue_id, encode_call("deposit(uint256,address)", amount_units, receiver)

    def encode_withdraw(self, venue_id: str, amount_units: int, receiver: str, owner: str) -> tuple[str, str]:
        return venue_id, encode_call("withdraw(uint256,address,address)", amount_units, receiver, owner)


class LiquidityPoolAdapter(VenueAdapter):
    """Constant-product pair contracts (Aerodrome volatile pools).

    TVL is priced from the stable side of the reserves. Depositing needs a
    router path for the paired asset, which this adapter does not build.
    """

    venue_type = VenueType.LIQUIDITY

    async def list_opportunities(self) -> tuple[list[Opportunity], list[str]]:
        opportunities: list[Opportunity] = []
        warnings: list[str] = []
        owner = self._wallet.address
        for venue in self._venues.values():
            reserves = decode_words(await self._wallet.call(venue.address, encode_call("getReserves()")))
            stable_reserve = reserves[venue.stable_index] if len(reserves) > venue.stable_index else 0
            tvl_usd = 2 * self._usd(stable_reserve)
            stake_usd = 0.0
            lp_units = 0
            if owner:
                lp_units = await self._wallet.token_balance(venue.address, owner)
                if lp_units:
                    supply = decode_uint(await self._wallet.call(venue.address, encode_call("totalSupply()")))
                    stake_usd = tvl_usd * lp_units / supply if supply else 0.0
            apy, warning = await self._apy.lookup(venue.address, self._placeholder)
            if warning:
                warnings.append(warning)
            opportunities.append(Opportunity(
                venue_id=venue.address,
                name=venue.name,
                venue_type=self.venue_type,
                apy=apy,
                tvl_usd=tvl_usd,
                user_stake_units=lp_units,
                user_stake_usd=stake_usd,
                pending_rewards_usd=0.0,
                protocol=venue.protocol,
            ))
        return opportunities, warnings

    def encode_deposit(self, venue_id: str, amount_units: int, receiver: str) -> tuple[str, str]:
        raise NotImplementedError("liquidity deposits need a router path for the paired asset")


def build_adapters(config: VenuesConfig, wallet: RpcWallet, apy_feed: ApyFeed,
                   stable_decimals: int = 6) -> list[VenueAdapter]:
    adapters: list[VenueAdapter] = []
    if config.lending:
        adapters.append(LendingVaultAdapter(
            config.lending, wallet, apy_feed, config.lending_placeholder_apy, stable_decimals))
    if config.liquidity:
        adapters.append(LiquidityPoolAdapter(
            config.liquidity, wallet, apy_feed, config.liquidity_placeholder_apy, stable_decimals))
    return adapters
