# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""JSON-RPC chain client for agentnet.

One POST per call, bounded timeout, no retries and no caching: retrying is
the caller's decision because task execution has side effects downstream.
Payload semantics are not interpreted here; see abi.py for decoding.

A JSON-RPC `null` result comes back as None and is never coerced to zero.
"""

import asyncio
import itertools
from abc import ABC, abstractmethod

import httpx

import abi
from protocol import RPC_TIMEOUT, RPC_URL, PermitToken


class RpcError(Exception):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, method: str = ""):
        super().__init__(message)
        self.message = message
        self.code = code
        self.method = method


class TransportError(RpcError):
    """The node could not be reached, timed out, or returned a non-2xx status."""


class ChainClient(ABC):
    """Abstract JSON-RPC client. Executor, signer and verifier get one injected."""

    @abstractmethod
    async def call(self, method: str, params: list | None = None):
        """Send one JSON-RPC request. Returns the raw `result` member.

        Raises RpcError (or TransportError) on failure.
        """
        ...

    async def eth_call(self, to: str, data: str, block: str = "latest"):
        return await self.call("eth_call", [{"to": to, "data": data}, block])


class HTTPChainClient(ChainClient):
    """JSON-RPC over HTTP using httpx."""

    def __init__(self, url: str | None = None, timeout: float | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.url = url or RPC_URL
        self.timeout = RPC_TIMEOUT if timeout is None else timeout
        self._transport = transport
        self._ids = itertools.count(1)

    async def call(self, method: str, params: list | None = None):
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                resp = await client.post(self.url, json=body)
        except httpx.TimeoutException as e:
            raise TransportError(f"RPC timeout after {self.timeout}s", method=method) from e
        except httpx.HTTPError as e:
            raise TransportError(f"RPC transport error: {e}", method=method) from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise TransportError(f"RPC HTTP {resp.status_code}", code=resp.status_code, method=method)
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError("RPC response is not JSON", method=method) from e

        if data.get("error"):
            err = data["error"]
            if isinstance(err, dict):
                raise RpcError(err.get("message", "unknown RPC error"), code=err.get("code"), method=method)
            raise RpcError(str(err), method=method)
        return data.get("result")


class StubChainClient(ChainClient):
    """Scripted chain client for tests and offline runs.

    Usage:
        stub = StubChainClient()
        stub.set("eth_blockNumber", "0x10")
        stub.set_call(USDC_ADDRESS, "70a08231", "0x" + "00" * 31 + "64")
        stub.fail("eth_gasPrice", "node overloaded")
        await stub.call("eth_blockNumber")  # "0x10"

    Results may be callables taking the params list. Unscripted methods
    raise RpcError, as a node would for an unknown method.
    """

    def __init__(self, responses: dict | None = None, yield_each_call: bool = True):
        self.responses: dict = dict(responses or {})
        self.call_results: dict[tuple[str, str], object] = {}
        self.failures: dict = {}
        self.calls: list[tuple[str, list]] = []  # log of calls for test assertions
        self.yield_each_call = yield_each_call
        self.in_flight = 0
        self.max_in_flight = 0

    def set(self, method: str, result):
        self.responses[method] = result

    def set_call(self, to: str, selector: str, result):
        """Script an eth_call reply for a contract address + 4-byte selector."""
        self.call_results[(to.lower(), selector.lower().removeprefix("0x"))] = result

    def fail(self, method: str, message: str = "stubbed failure", selector: str | None = None):
        """Make a method (or one eth_call selector) raise RpcError."""
        key = (method, selector.lower().removeprefix("0x")) if selector else method
        self.failures[key] = message

    async def call(self, method: str, params: list | None = None):
        params = params or []
        self.calls.append((method, params))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.yield_each_call:
                await asyncio.sleep(0)
            return self._respond(method, params)
        finally:
            self.in_flight -= 1

    def _respond(self, method: str, params: list):
        if method == "eth_call":
            tx = params[0] if params else {}
            to = str(tx.get("to", "")).lower()
            data = str(tx.get("data", "")).lower().removeprefix("0x")
            selector = data[:8]
            if ("eth_call", selector) in self.failures:
                raise RpcError(self.failures[("eth_call", selector)], method=method)
            if method in self.failures:
                raise RpcError(self.failures[method], method=method)
            if (to, selector) in self.call_results:
                result = self.call_results[(to, selector)]
                return result(params) if callable(result) else result
            # Execution reverted: what a node says for a missing function
            raise RpcError("execution reverted", code=3, method=method)

        if method in self.failures:
            raise RpcError(self.failures[method], method=method)
        if method not in self.responses:
            raise RpcError(f"the method {method} does not exist/is not available", code=-32601, method=method)
        result = self.responses[method]
        return result(params) if callable(result) else result

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)


# ---------------------------------------------------------------------------
# Typed reads
# ---------------------------------------------------------------------------

async def read_permit_nonce(client: ChainClient, token: PermitToken, owner: str) -> int | None:
    """Current EIP-2612 nonce of *owner* on *token*. None on an empty reply."""
    raw = await client.eth_call(token.address, abi.encode_address_call(abi.SELECTOR_NONCES, owner))
    return abi.decode_uint(raw)


async def read_token_balance(client: ChainClient, token_address: str, owner: str) -> int | None:
    """balanceOf(owner) in the token's base units. None on an empty reply."""
    raw = await client.eth_call(token_address, abi.encode_address_call(abi.SELECTOR_BALANCE_OF, owner))
    return abi.decode_uint(raw)
