"""EVM JSON-RPC client and wallet.

Handles all chain communication. Part of the rigid shell. Reads go straight
to the node; writes go through eth_sendTransaction so the signing key lives
with an external signer, never in this process. Paper mode performs the same
reads and simulates writes.
"""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from typing import Any

import httpx
import structlog

from yieldloop.shell.config import ChainConfig

log = structlog.get_logger()

# 4-byte function selectors (keccak256 of the signature, first 4 bytes)
SELECTORS = {
    "balanceOf(address)": "0x70a08231",
    "approve(address,uint256)": "0x095ea7b3",
    "allowance(address,address)": "0xdd62ed3e",
    "totalAssets()": "0x01e1d114",
    "convertToAssets(uint256)": "0x07a2d13a",
    "deposit(uint256,address)": "0x6e553f65",
    "withdraw(uint256,address,address)": "0xb460af94",
    "getReserves()": "0x0902f1ac",
    "totalSupply()": "0x18160ddd",
}

WORD_BYTES = 32


class RpcError(Exception):
    """JSON-RPC fault returned by the node, or a transport failure."""

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(f"RPC error {code}: {message}" if code is not None else message)


class ConfirmationTimeout(Exception):
    """Receipt not observed before the confirmation deadline. Needs manual inspection."""

    def __init__(self, tx_hash: str, timeout_seconds: float) -> None:
        self.tx_hash = tx_hash
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout_seconds:.0f}s")


class TransactionReverted(Exception):
    def __init__(self, tx_hash: str) -> None:
        self.tx_hash = tx_hash
        super().__init__(f"Transaction {tx_hash} reverted")


# --- ABI encoding ---

def _word(value: int | str) -> str:
    if isinstance(value, str):
        value = int(value, 16)
    if value < 0:
        raise ValueError("negative values cannot be ABI-encoded as uint256")
    return format(value, "064x")


def encode_call(signature: str, *args: int | str) -> str:
    """Calldata for a static-argument call: selector + 32-byte words.

    Addresses are passed as 0x-prefixed hex strings, integers as ints.
    """
    selector = SELECTORS[signature]
    return selector + "".join(_word(a) for a in args)


def decode_words(data: str) -> list[int]:
    raw = data[2:] if data.startswith("0x") else data
    if not raw:
        return []
    return [int(raw[i:i + 64], 16) for i in range(0, len(raw), 64)]


def decode_uint(data: str, index: int = 0) -> int:
    words = decode_words(data)
    if index >= len(words):
        raise RpcError(f"expected at least {index + 1} return words, got {len(words)}")
    return words[index]


# --- Transport ---

class RpcClient:
    """Minimal async JSON-RPC 2.0 client over httpx."""

    def __init__(self, url: str, timeout: float = 15.0,
                 client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: list | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            resp = await self._client.post(self._url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise RpcError(f"{method} transport failure: {e}") from e
        data = resp.json()
        if data.get("error"):
            err = data["error"]
            raise RpcError(err.get("message", str(err)), err.get("code"))
        return data.get("result")


# --- Wallet ---

class RpcWallet:
    """Live wallet: real reads, writes submitted to the node's signer."""

    paper = False

    def __init__(self, rpc: RpcClient, config: ChainConfig, poll_interval: float = 2.0) -> None:
        self._rpc = rpc
        self._config = config
        self._poll_interval = poll_interval

    @property
    def address(self) -> str:
        return self._config.wallet_address

    @property
    def stable_token(self) -> str:
        return self._config.stable_token

    def explorer_link(self, tx_ref: str) -> str:
        return f"{self._config.explorer_url}/tx/{tx_ref}"

    async def close(self) -> None:
        await self._rpc.close()

    # --- Reads ---

    async def block_number(self) -> int:
        return int(await self._rpc.call("eth_blockNumber"), 16)

    async def gas_price(self) -> int:
        return int(await self._rpc.call("eth_gasPrice"), 16)

    async def native_balance(self, owner: str | None = None) -> int:
        if not (owner or self.address):
            return 0
        return int(await self._rpc.call("eth_getBalance", [owner or self.address, "latest"]), 16)

    async def call(self, to: str, data: str) -> str:
        return await self._rpc.call("eth_call", [{"to": to, "data": data}, "latest"])

    async def token_balance(self, token: str, owner: str | None = None) -> int:
        owner = owner or self.address
        if not owner:
            return 0
        return decode_uint(await self.call(token, encode_call("balanceOf(address)", owner)))

    # --- Writes ---

    async def send_transaction(self, to: str, data: str, value: int = 0) -> str:
        tx = {"from": self.address, "to": to, "data": data, "value": hex(value)}
        tx_hash = await self._rpc.call("eth_sendTransaction", [tx])
        log.info("chain.tx_sent", tx=tx_hash, to=to)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        """Poll for the receipt until the confirmation deadline.

        Raises ConfirmationTimeout on deadline, TransactionReverted on status 0.
        No resubmission happens here.
        """
        timeout = self._config.confirmation_timeout_seconds
        deadline = time.monotonic() + timeout
        while True:
            receipt = await self._rpc.call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if receipt.get("status") != "0x1":
                    log.error("chain.tx_reverted", tx=tx_hash)
                    raise TransactionReverted(tx_hash)
                log.info("chain.tx_confirmed", tx=tx_hash, block=receipt.get("blockNumber"))
                return receipt
            if time.monotonic() >= deadline:
                log.error("chain.confirmation_timeout", tx=tx_hash, timeout=timeout)
                raise ConfirmationTimeout(tx_hash, timeout)
            await asyncio.sleep(self._poll_interval)

    async def send_and_confirm(self, to: str, data: str, value: int = 0) -> str:
        """Submit one step and block until it is confirmed. Returns the tx reference."""
        tx_hash = await self.send_transaction(to, data, value)
        await self.wait_for_receipt(tx_hash)
        return tx_hash


class PaperWallet(RpcWallet):
    """Paper wallet: real chain reads, simulated writes with synthetic references."""

    paper = True

    async def send_transaction(self, to: str, data: str, value: int = 0) -> str:
        tx_ref = f"paper-{uuid.uuid4().hex[:16]}"
        log.info("chain.paper_tx", tx=tx_ref, to=to, selector=data[:10])
        return tx_ref

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        return {"transactionHash": tx_hash, "status": "0x1", "blockNumber": None}

    def explorer_link(self, tx_ref: str) -> str:
        if tx_ref.startswith("paper-"):
            return ""
        return super().explorer_link(tx_ref)


def build_wallet(config: ChainConfig, paper: bool) -> RpcWallet:
    rpc = RpcClient(config.rpc_url, timeout=config.request_timeout_seconds)
    cls = PaperWallet if paper else RpcWallet
    return cls(rpc, config)
