"""
CKB node JSON-RPC client built on ``aiohttp``.

Every call is a single request with no retry; a failure raises ``RpcError``
and aborts whatever round needed it.  Synchronous callers wrap a call in
:func:`run_sync`.

Provides:
  - CkbRpcClient: get_live_cell / get_transaction / get_block_by_number /
    send_transaction
  - RpcCellResolver: resolves spent cells through ``get_transaction``
  - fetch_omnilock_info: type hash and cell dep of the deployed script
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, TypeVar

import aiohttp

from omnilock_core.coordinator import CellResolver
from omnilock_core.errors import ConfigError, RpcError, UnlockError
from omnilock_core.transaction import (
    CellDep,
    CellOutput,
    OutPoint,
    Script,
    Transaction,
    bytes_to_hex,
    hex_to_bytes,
    int_to_hex,
)

logger = logging.getLogger("omnilock_rpc")

T = TypeVar("T")


def run_sync(awaitable: Awaitable[T]) -> T:
    """Run one RPC coroutine to completion from synchronous code."""
    async def _wrap():
        return await awaitable
    return asyncio.run(_wrap())


class CkbRpcClient:
    """Minimal CKB JSON-RPC 2.0 client."""

    def __init__(self, url: str = "http://127.0.0.1:8114", timeout: float = 30.0):
        self.url = url
        self.timeout = timeout
        self._ids = itertools.count(1)

    async def request(self, method: str, params: list[Any]) -> Any:
        payload = {
            "id": next(self._ids),
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
        }
        logger.debug(f"rpc -> {method}")
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload) as resp:
                    if resp.status != 200:
                        raise RpcError(f"{method}: HTTP {resp.status} from {self.url}")
                    body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RpcError(f"{method}: cannot reach {self.url}: {exc}") from exc
        if not isinstance(body, dict):
            raise RpcError(f"{method}: malformed response")
        error = body.get("error")
        if error:
            raise RpcError(f"{method}: {error.get('message', error)}")
        return body.get("result")

    async def get_live_cell(self, out_point: OutPoint, with_data: bool = False) -> dict:
        return await self.request("get_live_cell", [out_point.to_dict(), with_data])

    async def get_transaction(self, tx_hash: bytes) -> dict | None:
        return await self.request("get_transaction", [bytes_to_hex(tx_hash)])

    async def get_block_by_number(self, number: int) -> dict | None:
        return await self.request("get_block_by_number", [int_to_hex(number)])

    async def send_transaction(self, tx: Transaction) -> bytes:
        result = await self.request("send_transaction", [tx.to_dict(), "passthrough"])
        return hex_to_bytes(result)


class RpcCellResolver(CellResolver):
    """Resolves input cells from their creating transactions (cached)."""

    def __init__(self, client: CkbRpcClient):
        self.client = client
        self._txs: dict[bytes, Transaction] = {}

    def _load_tx(self, tx_hash: bytes) -> Transaction:
        if tx_hash not in self._txs:
            try:
                result = run_sync(self.client.get_transaction(tx_hash))
            except RpcError as exc:
                raise UnlockError(f"cannot fetch transaction {bytes_to_hex(tx_hash)}: {exc}") from exc
            if not result or not result.get("transaction"):
                raise UnlockError(f"transaction {bytes_to_hex(tx_hash)} not found")
            self._txs[tx_hash] = Transaction.from_dict(result["transaction"])
        return self._txs[tx_hash]

    def get_cell(self, out_point: OutPoint) -> CellOutput:
        tx = self._load_tx(out_point.tx_hash)
        if out_point.index >= len(tx.outputs):
            raise UnlockError(f"output {out_point} does not exist")
        return tx.outputs[out_point.index]


@dataclass(frozen=True)
class OmniLockInfo:
    type_hash: bytes
    cell_dep: CellDep


async def fetch_omnilock_info(client: CkbRpcClient, tx_hash: bytes, index: int) -> OmniLockInfo:
    """Locate the deployed OmniLock script cell and derive its type hash."""
    out_point = OutPoint(tx_hash, index)
    status = await client.get_live_cell(out_point, False)
    cell = (status or {}).get("cell")
    if not cell or status.get("status") != "live":
        raise ConfigError(f"omnilock deployment cell {out_point} is not live")
    type_script = cell["output"].get("type")
    if not type_script:
        raise ConfigError(f"omnilock deployment cell {out_point} has no type script")
    type_hash = Script.from_dict(type_script).script_hash()
    return OmniLockInfo(type_hash, CellDep(out_point, "code"))
