import base64
import json
from decimal import Decimal

import httpx
import pytest

from bitcoind_regtest.errors import RpcError
from bitcoind_regtest.rpc import RpcClient


def _client(handler):
    return RpcClient("127.0.0.1", 18443, "user", "pass", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_call_sends_jsonrpc_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"result": 42, "error": None, "id": seen["body"]["id"]})

    async with _client(handler) as rpc:
        assert await rpc.call("getblockcount") == 42
        await rpc.call("generatetoaddress", 1, "mxyz")

    assert seen["auth"] == "Basic " + base64.b64encode(b"user:pass").decode()
    assert seen["body"]["method"] == "generatetoaddress"
    assert seen["body"]["params"] == [1, "mxyz"]
    assert seen["body"]["jsonrpc"] == "1.0"


@pytest.mark.asyncio
async def test_amounts_are_decimal():
    def handler(request):
        body = b'{"result": [{"amount": 0.1}, {"amount": 49.99990000}], "error": null, "id": 1}'
        return httpx.Response(200, content=body, headers={"content-type": "application/json"})

    async with _client(handler) as rpc:
        rows = await rpc.call("listunspent", 0)
    assert rows[0]["amount"] == Decimal("0.1")
    assert isinstance(rows[1]["amount"], Decimal)


@pytest.mark.asyncio
async def test_error_object_raises_rpc_error():
    def handler(request):
        reply = {"result": None, "error": {"code": -11, "message": "No addresses with label"}, "id": 1}
        return httpx.Response(500, json=reply)

    async with _client(handler) as rpc:
        with pytest.raises(RpcError) as info:
            await rpc.call("getaddressesbylabel", "")
    assert info.value.code == -11
    assert info.value.method == "getaddressesbylabel"


@pytest.mark.asyncio
async def test_http_error_without_json_propagates():
    def handler(request):
        return httpx.Response(401, content=b"")

    async with _client(handler) as rpc:
        with pytest.raises(httpx.HTTPStatusError):
            await rpc.call("getblockcount")


@pytest.mark.asyncio
async def test_batch_results_follow_request_order():
    def handler(request):
        reqs = json.loads(request.content)
        replies = [{"result": f"addr-{r['id']}", "error": None, "id": r["id"]} for r in reqs]
        return httpx.Response(200, json=list(reversed(replies)))

    async with _client(handler) as rpc:
        first = await rpc.batch([("getnewaddress", [])] * 3)
        assert first == ["addr-1", "addr-2", "addr-3"]
        assert await rpc.batch([]) == []


@pytest.mark.asyncio
async def test_batch_raises_first_error():
    def handler(request):
        reqs = json.loads(request.content)
        replies = []
        for r in reqs:
            if r["params"][0] == "bad":
                replies.append({"result": None, "error": {"code": -4, "message": "unknown"}, "id": r["id"]})
            else:
                replies.append({"result": "cW...", "error": None, "id": r["id"]})
        return httpx.Response(200, json=replies)

    async with _client(handler) as rpc:
        with pytest.raises(RpcError) as info:
            await rpc.batch([("dumpprivkey", ["good"]), ("dumpprivkey", ["bad"])])
    assert info.value.code == -4
    assert info.value.method == "dumpprivkey"


@pytest.mark.asyncio
async def test_transport_errors_propagate():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as rpc:
        with pytest.raises(httpx.ConnectError):
            await rpc.call("getblockchaininfo")
