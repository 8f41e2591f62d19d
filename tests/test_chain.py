"""Tests for chain.py: JSON-RPC over HTTP and the scripted stub."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import json

import httpx
import pytest

import abi
from chain import (
    HTTPChainClient, RpcError, StubChainClient, TransportError,
    read_permit_nonce, read_token_balance,
)
from conftest import PAYER, uint_word
from protocol import USDC


def rpc_node(handler):
    """HTTPChainClient whose requests go to *handler(body) -> (status, payload)*."""
    seen = []

    def respond(request: httpx.Request):
        body = json.loads(request.content)
        seen.append(body)
        status, payload = handler(body)
        if isinstance(payload, Exception):
            raise payload
        return httpx.Response(status, json=payload)

    client = HTTPChainClient(url="http://node.test", timeout=2, transport=httpx.MockTransport(respond))
    return client, seen


# --- HTTPChainClient ---

@pytest.mark.asyncio
async def test_call_returns_result():
    client, seen = rpc_node(lambda body: (200, {"jsonrpc": "2.0", "id": body["id"], "result": "0x10"}))
    assert await client.call("eth_blockNumber") == "0x10"
    assert seen[0]["method"] == "eth_blockNumber"
    assert seen[0]["params"] == []
    assert seen[0]["jsonrpc"] == "2.0"


@pytest.mark.asyncio
async def test_request_ids_increase():
    client, seen = rpc_node(lambda body: (200, {"jsonrpc": "2.0", "id": body["id"], "result": "0x1"}))
    await client.call("eth_blockNumber")
    await client.call("eth_blockNumber")
    assert seen[1]["id"] == seen[0]["id"] + 1


@pytest.mark.asyncio
async def test_null_result_is_none_not_zero():
    client, _ = rpc_node(lambda body: (200, {"jsonrpc": "2.0", "id": body["id"], "result": None}))
    assert await client.call("eth_getTransactionByHash", ["0x" + "00" * 32]) is None


@pytest.mark.asyncio
async def test_rpc_error_carries_node_message():
    client, _ = rpc_node(lambda body: (200, {
        "jsonrpc": "2.0", "id": body["id"], "error": {"code": -32000, "message": "header not found"},
    }))
    with pytest.raises(RpcError) as exc:
        await client.call("eth_getBlockByNumber", ["0xffffffff", False])
    assert exc.value.message == "header not found"
    assert exc.value.code == -32000
    assert exc.value.method == "eth_getBlockByNumber"
    assert not isinstance(exc.value, TransportError)


@pytest.mark.asyncio
async def test_http_error_is_transport_error():
    client, _ = rpc_node(lambda body: (503, {"error": "overloaded"}))
    with pytest.raises(TransportError) as exc:
        await client.call("eth_gasPrice")
    assert exc.value.code == 503


@pytest.mark.asyncio
async def test_timeout_is_transport_error_and_not_retried():
    client, seen = rpc_node(lambda body: (200, httpx.ReadTimeout("slow node")))
    with pytest.raises(TransportError):
        await client.call("eth_gasPrice")
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_eth_call_shape():
    client, seen = rpc_node(lambda body: (200, {"jsonrpc": "2.0", "id": body["id"], "result": uint_word(3)}))
    await client.eth_call(USDC.address, "0x313ce567")
    assert seen[0]["method"] == "eth_call"
    assert seen[0]["params"] == [{"to": USDC.address, "data": "0x313ce567"}, "latest"]


# --- StubChainClient ---

@pytest.mark.asyncio
async def test_stub_scripted_and_callable_results():
    stub = StubChainClient({"eth_blockNumber": "0x10"})
    stub.set("eth_getBalance", lambda params: "0x1" if params[0] == PAYER else "0x0")
    assert await stub.call("eth_blockNumber") == "0x10"
    assert await stub.call("eth_getBalance", [PAYER, "latest"]) == "0x1"
    assert stub.count("eth_getBalance") == 1


@pytest.mark.asyncio
async def test_stub_unknown_method():
    stub = StubChainClient()
    with pytest.raises(RpcError) as exc:
        await stub.call("eth_chainId")
    assert exc.value.code == -32601


@pytest.mark.asyncio
async def test_stub_unscripted_eth_call_reverts():
    stub = StubChainClient()
    with pytest.raises(RpcError) as exc:
        await stub.eth_call(USDC.address, "0x06fdde03")
    assert exc.value.code == 3


@pytest.mark.asyncio
async def test_stub_fail_single_selector():
    stub = StubChainClient()
    stub.set_call(USDC.address, abi.SELECTOR_DECIMALS, uint_word(6))
    stub.set_call(USDC.address, abi.SELECTOR_SYMBOL, uint_word(1))
    stub.fail("eth_call", "boom", selector=abi.SELECTOR_SYMBOL)
    assert await stub.eth_call(USDC.address, "0x" + abi.SELECTOR_DECIMALS) == uint_word(6)
    with pytest.raises(RpcError):
        await stub.eth_call(USDC.address, "0x" + abi.SELECTOR_SYMBOL)


# --- Typed reads ---

@pytest.mark.asyncio
async def test_read_permit_nonce_and_balance():
    stub = StubChainClient()
    stub.set_call(USDC.address, abi.SELECTOR_NONCES, uint_word(7))
    stub.set_call(USDC.address, abi.SELECTOR_BALANCE_OF, uint_word(2_500_000))
    assert await read_permit_nonce(stub, USDC, PAYER) == 7
    assert await read_token_balance(stub, USDC.address, PAYER) == 2_500_000

    method, params = stub.calls[0]
    assert method == "eth_call"
    assert params[0]["data"] == abi.encode_address_call(abi.SELECTOR_NONCES, PAYER)


@pytest.mark.asyncio
async def test_empty_reply_is_none():
    stub = StubChainClient()
    stub.set_call(USDC.address, abi.SELECTOR_NONCES, "0x")
    assert await read_permit_nonce(stub, USDC, PAYER) is None
