"""
Tests for HttpChainClient envelope handling, using httpx.MockTransport.
"""
import json

import httpx
import pytest

from settlement.chain.client import HttpChainClient
from settlement.core.errors import ChainError, ChainUnavailable, MessageRejected

BASE = "https://chain.test/api/v2"


def make_client(handler):
    transport = httpx.MockTransport(handler)
    return HttpChainClient(BASE, client=httpx.AsyncClient(base_url=BASE, transport=transport))


class TestReads:
    @pytest.mark.asyncio
    async def test_get_balance(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["address"] = request.url.params["address"]
            return httpx.Response(200, json={"ok": True, "result": "150000000"})

        client = make_client(handler)
        assert await client.get_balance("EQ-a") == 150_000_000
        assert seen == {"path": "/api/v2/getAddressBalance", "address": "EQ-a"}

    @pytest.mark.asyncio
    async def test_account_state(self):
        def handler(request):
            return httpx.Response(200, json={"ok": True, "result": {"balance": "0", "state": "uninitialized"}})

        state = await make_client(handler).get_account_state("EQ-a")
        assert state.balance == 0
        assert not state.is_initialized

    @pytest.mark.asyncio
    async def test_run_get_method_posts_stack(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True, "result": {"exit_code": 0, "stack": [["num", "0x2a"]]}})

        result = await make_client(handler).run_get_method("EQ-m", "get_wallet_data", [("address", "EQ-o")])
        assert result.read_int(0) == 42
        assert bodies[0] == {"address": "EQ-m", "method": "get_wallet_data", "stack": [["address", "EQ-o"]]}

    @pytest.mark.asyncio
    async def test_get_transactions_parses_memo_and_hash(self):
        def handler(request):
            return httpx.Response(200, json={"ok": True, "result": [
                {
                    "transaction_id": {"hash": "abc=", "lt": "77"},
                    "utime": 1700000000,
                    "in_msg": {"message": ""},
                    "out_msgs": [{"destination": "EQ-s", "value": "1", "message": "Order o - Seller payment"}],
                },
                {"transaction_id": {"lt": "76"}, "in_msg": {"message": "incoming"}},
            ]})

        txs = await make_client(handler).get_transactions("EQ-a", limit=2)
        assert txs[0].hash == "abc="
        assert txs[0].lt == 77
        assert txs[0].memo == "Order o - Seller payment"
        assert txs[0].destination == "EQ-s"
        assert txs[1].hash is None
        assert txs[1].memo == "incoming"


class TestErrors:
    @pytest.mark.asyncio
    async def test_rejection_text_maps_to_message_rejected(self):
        def handler(request):
            return httpx.Response(500, json={
                "ok": False,
                "error": "LITE_SERVER_UNKNOWN: inbound external message rejected by transaction",
                "code": 500,
            })

        with pytest.raises(MessageRejected):
            await make_client(handler).send_message({"message": {}, "signer": "x", "signature": "0x"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 502, 503, 504])
    async def test_transient_status(self, status):
        def handler(request):
            return httpx.Response(status, json={"ok": False, "error": "busy"})

        with pytest.raises(ChainUnavailable):
            await make_client(handler).get_balance("EQ-a")

    @pytest.mark.asyncio
    async def test_other_error_keeps_exit_code(self):
        def handler(request):
            return httpx.Response(200, json={"ok": False, "error": "bad stack", "code": -13})

        with pytest.raises(ChainError) as excinfo:
            await make_client(handler).run_get_method("EQ-a", "balance")
        assert excinfo.value.exit_code == -13
        assert not isinstance(excinfo.value, ChainUnavailable)

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ChainUnavailable):
            await make_client(handler).get_balance("EQ-a")

    @pytest.mark.asyncio
    async def test_send_message_returns_hash(self):
        def handler(request):
            return httpx.Response(200, json={"ok": True, "result": {"hash": "h1"}})

        assert await make_client(handler).send_message({"message": {}, "signer": "x", "signature": "0x"}) == "h1"

    @pytest.mark.asyncio
    async def test_shared_client_is_not_closed(self):
        shared = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        client = HttpChainClient(BASE, client=shared)
        await client.close()
        assert not shared.is_closed
        await shared.aclose()
