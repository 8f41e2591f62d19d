# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Platform API client for agentnet.

Thin HTTP client with a pluggable transport interface, plus the client-side
permit signer. Private keys never leave the caller: permits are signed
locally and only (v, r, s) goes over the wire.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

import httpx

import abi
from chain import ChainClient, RpcError, read_permit_nonce
from crypto import Permit, address_of, permit_typed_data, sign_permit
from protocol import (
    DEFAULT_MAX_PRICE, PERMIT_PAYMENT_METHOD, PERMIT_WINDOW_SECONDS, USDC, PermitReason, PermitToken,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Permit signer
# ---------------------------------------------------------------------------

class PermitSigner:
    """Signs EIP-2612 permits for *token* with a caller-held private key."""

    def __init__(self, chain: ChainClient, token: PermitToken = USDC, clock=time.time):
        self.chain = chain
        self.token = token
        self.clock = clock

    async def current_nonce(self, owner: str) -> int:
        """Owner's permit nonce, or 0 if the chain can't be read.

        A zero-nonce permit is provisional: the verifier re-reads the nonce
        and rejects it if the owner has used permits before.
        """
        try:
            nonce = await read_permit_nonce(self.chain, self.token, owner)
        except RpcError as e:
            log.warning("could not read permit nonce for %s (%s); signing provisional permit at nonce 0",
                        owner, e.message)
            return 0
        if nonce is None:
            log.warning("empty nonce reply for %s; signing provisional permit at nonce 0", owner)
            return 0
        return nonce

    async def sign(self, private_key: str, owner: str, spender: str, amount) -> Permit:
        """Sign a permit letting *spender* pull *amount* (token units, e.g. "0.25") from *owner*."""
        value = abi.to_units(amount, self.token.decimals)
        nonce = await self.current_nonce(owner)
        deadline = int(self.clock()) + PERMIT_WINDOW_SECONDS
        typed = permit_typed_data(self.token, owner, spender, value, nonce, deadline)
        v, r, s = sign_permit(private_key, typed)
        return Permit(owner=owner, spender=spender, value=value, nonce=nonce,
                      deadline=deadline, v=v, r=r, s=s)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class Transport(ABC):
    """Override this to talk to the platform some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None):
        ...

    @abstractmethod
    async def patch(self, path: str, data: dict) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to the platform over HTTP with a Bearer API key.

    Client errors (4xx) come back as {"status": code, **body} so callers can
    read rejection reasons; 5xx other than 502 raises httpx.HTTPStatusError.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._transport = transport

    def _headers(self) -> dict:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    def _handle(self, resp: httpx.Response):
        # 502 is the verifier's chain_unavailable rejection, which has a body
        if 400 <= resp.status_code < 500 or resp.status_code == 502:
            try:
                body = resp.json()
            except ValueError:
                body = {"detail": resp.text}
            if not isinstance(body, dict):
                body = {"detail": body}
            return {"status": resp.status_code, **body}
        resp.raise_for_status()
        return resp.json()

    async def _request(self, method: str, path: str, **kwargs):
        async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport) as client:
            resp = await client.request(method, path, headers=self._headers(), timeout=30.0, **kwargs)
            return self._handle(resp)

    async def post(self, path: str, data: dict) -> dict:
        return await self._request("POST", path, json=data)

    async def get(self, path: str, params: dict | None = None):
        return await self._request("GET", path, params=params)

    async def patch(self, path: str, data: dict) -> dict:
        return await self._request("PATCH", path, json=data)


# ---------------------------------------------------------------------------
# High-level client
# ---------------------------------------------------------------------------

class PlatformError(Exception):
    """The platform refused a request."""

    def __init__(self, status: int, detail):
        super().__init__(f"HTTP {status}: {detail}")
        self.status = status
        self.detail = detail


def _ok(resp):
    if isinstance(resp, dict) and isinstance(resp.get("status"), int) and "detail" in resp:
        raise PlatformError(resp["status"], resp["detail"])
    return resp


@dataclass
class RequestOutcome:
    """Result of request_task. Task and payment outcomes are independent."""
    task_id: str
    result: dict | None = None
    proof_hash: str | None = None
    payment: dict | None = None
    verification: dict = field(default_factory=dict)

    @property
    def task_ok(self) -> bool:
        return bool(self.result) and self.result.get("status") == "completed"

    @property
    def paid(self) -> bool:
        return bool(self.payment) and self.payment.get("status") == "verified"

    @property
    def rejection(self) -> str | None:
        """Permit rejection reason, if the payment was refused."""
        if self.verification.get("valid") is False:
            return self.verification.get("reason")
        return None


class AgentNetClient:
    """High-level client for the agentnet platform."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 api_key: str = ""):
        self.transport = transport or HTTPTransport(base_url, api_key=api_key)

    # --- Agents ---

    async def register_agent(self, name: str, wallet_address: str | None = None,
                             capabilities: list[str] | None = None, description: str = "",
                             endpoint_url: str = "") -> dict:
        """Register an agent. The returned api_key is shown only once."""
        return _ok(await self.transport.post("/agents", {
            "name": name,
            "wallet_address": wallet_address,
            "capabilities": capabilities or [],
            "description": description,
            "endpoint_url": endpoint_url,
        }))

    async def get_agent(self, agent_id: str) -> dict:
        return _ok(await self.transport.get(f"/agents/{agent_id}"))

    async def list_agents(self, capability: str = "", search: str = "") -> list[dict]:
        return _ok(await self.transport.get("/agents", {"capability": capability, "search": search}))

    async def update_agent(self, agent_id: str, **fields) -> dict:
        return _ok(await self.transport.patch(f"/agents/{agent_id}", fields))

    # --- Tasks ---

    async def create_task(self, requester_agent_id: str, target_agent_id: str,
                          task_type: str, task_input=None) -> dict:
        payload = {"input": task_input} if task_input is not None else {}
        return _ok(await self.transport.post("/tasks", {
            "requester_agent_id": requester_agent_id,
            "target_agent_id": target_agent_id,
            "task_type": task_type,
            "payload": payload,
        }))

    async def execute_task(self, task_id: str | None = None, task_type: str | None = None,
                           task_input=None) -> dict:
        """Run a task. Returns {result, proof_hash}."""
        return _ok(await self.transport.post("/tasks/execute", {
            "task_id": task_id, "task_type": task_type, "input": task_input,
        }))

    async def get_task(self, task_id: str) -> dict:
        return _ok(await self.transport.get(f"/tasks/{task_id}"))

    async def task_types(self) -> dict:
        return _ok(await self.transport.get("/tasks/types"))

    # --- Payments ---

    async def create_payment(self, task_id: str, from_agent_id: str, to_agent_id: str, amount,
                             permit: Permit | None = None, **extra) -> dict:
        body = {
            "task_id": task_id,
            "from_agent_id": from_agent_id,
            "to_agent_id": to_agent_id,
            "amount": str(amount),
            **extra,
        }
        if permit is not None:
            body.update({
                "payment_method": PERMIT_PAYMENT_METHOD,
                "permit_signature": permit.signature,
                "permit_deadline": permit.deadline,
                "permit_nonce": permit.nonce,
                "permit_v": permit.v,
                "permit_r": permit.r,
                "permit_s": permit.s,
            })
        return _ok(await self.transport.post("/payments", body))

    async def verify_permit(self, permit: Permit, from_agent_id: str) -> dict:
        """Ask the platform to verify a permit. Rejections are returned, not raised."""
        return await self.transport.post("/payments/permit/verify",
                                         {**permit.to_dict(), "from_agent_id": from_agent_id})

    async def settle_payment(self, payment_id: str, tx_ref: str) -> dict:
        return _ok(await self.transport.post(f"/payments/{payment_id}/verify", {"tx_ref": tx_ref}))

    async def fail_payment(self, payment_id: str, reason: str) -> dict:
        return _ok(await self.transport.post(f"/payments/{payment_id}/fail", {"reason": reason}))

    async def get_payment(self, payment_id: str) -> dict:
        return _ok(await self.transport.get(f"/payments/{payment_id}"))

    # --- Reputation ---

    async def get_reputation(self, agent_id: str) -> dict:
        return _ok(await self.transport.get(f"/reputation/{agent_id}"))

    async def leaderboard(self) -> list[dict]:
        return _ok(await self.transport.get("/reputation/leaderboard"))

    async def dashboard(self) -> dict:
        """Platform overview: counts, recent activity, latest tasks and top agents."""
        return _ok(await self.transport.get("/dashboard/overview"))

    # --- Combined flow ---

    async def request_task(self, signer: PermitSigner, private_key: str,
                           requester_agent_id: str, target_agent_id: str,
                           task_type: str, task_input=None, price=None) -> RequestOutcome:
        """Create a task, run it, and pay for it with a gasless permit.

        The task outcome and the payment outcome are reported separately: a
        task can complete while its payment is rejected. A rejected permit
        marks the payment failed, except on chain_unavailable, where the
        payment stays signed so it can be verified again later.
        """
        price = Decimal(str(price if price is not None else DEFAULT_MAX_PRICE))
        payee = await self.get_agent(target_agent_id)
        if not payee.get("wallet_address"):
            raise ValueError(f"Agent {target_agent_id} has no wallet to pay")

        task = await self.create_task(requester_agent_id, target_agent_id, task_type, task_input)
        outcome = RequestOutcome(task_id=task["id"])

        owner = address_of(private_key)
        permit = await signer.sign(private_key, owner, payee["wallet_address"], price)

        executed = await self.execute_task(task_id=task["id"])
        outcome.result = executed["result"]
        outcome.proof_hash = executed["proof_hash"]

        payment = await self.create_payment(task["id"], requester_agent_id, target_agent_id, price, permit)
        outcome.verification = await self.verify_permit(permit, requester_agent_id)

        if outcome.verification.get("valid"):
            payment = await self.settle_payment(payment["id"], outcome.verification["permit_hash"])
        else:
            reason = outcome.verification.get("reason")
            log.warning("payment %s rejected: %s", payment["id"], reason)
            if reason != PermitReason.CHAIN_UNAVAILABLE.value:
                payment = await self.fail_payment(payment["id"], reason or "rejected")
        outcome.payment = payment
        return outcome
