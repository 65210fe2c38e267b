"""
Tests for omnilock_core.rpc — JSON-RPC client against a fake CKB node,
cell resolution and deployment lookup.
"""

from __future__ import annotations

import asyncio
import unittest

from aiohttp import test_utils, web

from builders import OMNILOCK_TYPE_HASH, build_tx, foreign_lock
from omnilock_core.auth_scheme import PubkeyHash
from omnilock_core.errors import ConfigError, RpcError, UnlockError
from omnilock_core.rpc import CkbRpcClient, RpcCellResolver, fetch_omnilock_info, run_sync
from omnilock_core.transaction import CellOutput, OutPoint, Script, bytes_to_hex


def _fake_node(results: dict, calls: list, status: int = 200) -> web.Application:
    async def handle(request: web.Request) -> web.Response:
        body = await request.json()
        calls.append(body)
        if status != 200:
            return web.Response(status=status, text="nope")
        method = body["method"]
        if method not in results:
            return web.json_response({
                "jsonrpc": "2.0", "id": body["id"],
                "error": {"code": -32601, "message": f"method {method} not found"},
            })
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": results[method]})

    app = web.Application()
    app.router.add_post("/", handle)
    return app


def _with_node(results, test, status=200):
    calls: list = []

    async def _test():
        server = test_utils.TestServer(_fake_node(results, calls, status))
        await server.start_server()
        try:
            await test(CkbRpcClient(str(server.make_url("/")), timeout=5))
        finally:
            await server.close()

    asyncio.run(_test())
    return calls


class TestClient(unittest.TestCase):

    def test_request_payload(self):
        out_point = OutPoint(bytes(32), 1)

        async def test(client):
            result = await client.get_live_cell(out_point, True)
            self.assertEqual(result, {"status": "live"})

        calls = _with_node({"get_live_cell": {"status": "live"}}, test)
        self.assertEqual(calls[0]["jsonrpc"], "2.0")
        self.assertEqual(calls[0]["method"], "get_live_cell")
        self.assertEqual(calls[0]["params"], [out_point.to_dict(), True])

    def test_send_transaction(self):
        tx, _ = build_tx(PubkeyHash(bytes(20)))
        tx_hash = tx.hash()

        async def test(client):
            self.assertEqual(await client.send_transaction(tx), tx_hash)

        calls = _with_node({"send_transaction": bytes_to_hex(tx_hash)}, test)
        self.assertEqual(calls[0]["params"], [tx.to_dict(), "passthrough"])

    def test_block_number_hex(self):
        async def test(client):
            await client.get_block_by_number(16)

        calls = _with_node({"get_block_by_number": None}, test)
        self.assertEqual(calls[0]["params"], ["0x10"])

    def test_rpc_error(self):
        async def test(client):
            with self.assertRaises(RpcError):
                await client.get_transaction(bytes(32))

        _with_node({}, test)

    def test_http_error(self):
        async def test(client):
            with self.assertRaises(RpcError):
                await client.get_transaction(bytes(32))

        _with_node({}, test, status=500)

    def test_unreachable(self):
        client = CkbRpcClient("http://127.0.0.1:1", timeout=2)
        with self.assertRaises(RpcError):
            run_sync(client.get_transaction(bytes(32)))


# ═══════════════════════════════════════════════════════════════════
#  Resolver and deployment lookup (fake client, no network)
# ═══════════════════════════════════════════════════════════════════

class FakeClient(CkbRpcClient):

    def __init__(self, transactions=None, live_cells=None):
        super().__init__("http://fake")
        self.transactions = transactions or {}
        self.live_cells = live_cells or {}
        self.fetched: list[bytes] = []

    async def get_transaction(self, tx_hash):
        self.fetched.append(tx_hash)
        tx = self.transactions.get(tx_hash)
        return {"transaction": tx.to_dict(), "tx_status": {"status": "committed"}} if tx else None

    async def get_live_cell(self, out_point, with_data=False):
        return self.live_cells.get(out_point, {"cell": None, "status": "unknown"})


class TestResolver(unittest.TestCase):

    def setUp(self):
        self.prev, _ = build_tx(PubkeyHash(bytes(20)))
        self.prev.outputs.append(CellOutput(500, Script(OMNILOCK_TYPE_HASH, "type", b"\x01")))
        self.prev.outputs_data.append(b"")
        self.client = FakeClient({self.prev.hash(): self.prev})
        self.resolver = RpcCellResolver(self.client)

    def test_resolves_and_caches(self):
        cell = self.resolver.get_cell(OutPoint(self.prev.hash(), 1))
        self.assertEqual(cell.capacity, 500)
        self.assertEqual(self.resolver.get_cell(OutPoint(self.prev.hash(), 0)).lock, foreign_lock())
        self.assertEqual(self.client.fetched, [self.prev.hash()])

    def test_unknown_transaction(self):
        with self.assertRaises(UnlockError):
            self.resolver.get_cell(OutPoint(bytes(32), 0))

    def test_index_out_of_range(self):
        with self.assertRaises(UnlockError):
            self.resolver.get_cell(OutPoint(self.prev.hash(), 7))

    def test_rpc_failure_is_unlock_error(self):
        resolver = RpcCellResolver(CkbRpcClient("http://127.0.0.1:1", timeout=2))
        with self.assertRaises(UnlockError):
            resolver.get_cell(OutPoint(bytes(32), 0))


class TestOmniLockInfo(unittest.TestCase):

    def test_type_hash_from_deployment(self):
        type_script = Script(bytes(32), "type", b"\x42" * 32)
        deploy = OutPoint(bytes(32), 0)
        live = {
            "status": "live",
            "cell": {"output": CellOutput(1000, foreign_lock(), type_script).to_dict()},
        }
        client = FakeClient(live_cells={deploy: live})
        info = run_sync(fetch_omnilock_info(client, deploy.tx_hash, 0))
        self.assertEqual(info.type_hash, type_script.script_hash())
        self.assertEqual(info.cell_dep.out_point, deploy)

    def test_dead_cell(self):
        with self.assertRaises(ConfigError):
            run_sync(fetch_omnilock_info(FakeClient(), bytes(32), 0))

    def test_no_type_script(self):
        deploy = OutPoint(bytes(32), 0)
        live = {"status": "live", "cell": {"output": CellOutput(1, foreign_lock()).to_dict()}}
        with self.assertRaises(ConfigError):
            run_sync(fetch_omnilock_info(FakeClient(live_cells={deploy: live}), bytes(32), 0))
