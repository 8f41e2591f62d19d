# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for agentnet (FastAPI).

Endpoints for agent registration, task lifecycle and execution, payment
settlement with gasless permits, reputation queries, and a dashboard overview.

Task creation and agent updates require the agent's API key as a
Bearer token. Permit verification is authenticated by the permit itself:
the signature must recover to the wallet registered for from_agent_id.
"""

import sys
import os
import time
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
from decimal import Decimal
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from chain import ChainClient, HTTPChainClient
from crypto import proof_hash
from protocol import CHAIN_ID, CHAIN_NAME, TASK_TYPES, USDC, PaymentState, PermitToken, TaskState
from server.agents import AgentRegistry, WalletTaken
from server.events import EventBus
from server.executor import TaskExecutor
from server.payments import DuplicatePermitError, PaymentLedger, PaymentNotFound
from server.permit import PermitRejected, PermitVerifier
from server.reputation import ReputationManager
from server.store import TaskStore

log = logging.getLogger(__name__)

# Dashboard activity covers the last 30 days
ACTIVITY_WINDOW = 30 * 24 * 3600


# --- Request/Response models ---

class RegisterAgentRequest(BaseModel):
    name: str
    wallet_address: Optional[str] = None
    capabilities: list[str] = []
    description: str = ""
    endpoint_url: str = ""

class UpdateAgentRequest(BaseModel):
    name: Optional[str] = None
    capabilities: Optional[list[str]] = None
    status: Optional[str] = None
    description: Optional[str] = None
    endpoint_url: Optional[str] = None

class CreateTaskRequest(BaseModel):
    requester_agent_id: str
    target_agent_id: str
    task_type: str
    payload: dict = {}

class TaskStatusRequest(BaseModel):
    status: str
    result: Optional[dict] = None
    proof_hash: Optional[str] = None

class ExecuteTaskRequest(BaseModel):
    task_id: Optional[str] = None
    task_type: Optional[str] = None
    input: Any = None

class CreatePaymentRequest(BaseModel):
    task_id: Optional[str] = None
    from_agent_id: Optional[str] = None
    to_agent_id: Optional[str] = None
    amount: Decimal
    currency: Optional[str] = None
    network: Optional[str] = None
    payment_method: Optional[str] = None
    tx_hash: Optional[str] = None
    permit_signature: Optional[str] = None
    permit_deadline: Optional[int] = None
    permit_nonce: Optional[int] = None
    permit_v: Optional[int] = None
    permit_r: Optional[str] = None
    permit_s: Optional[str] = None

class PermitVerifyRequest(BaseModel):
    # All optional so that a missing field is reported as missing_parameters
    owner: Optional[str] = None
    spender: Optional[str] = None
    value: Optional[int | str] = None
    nonce: Optional[int] = None
    deadline: Optional[int] = None
    v: Optional[int] = None
    r: Optional[str] = None
    s: Optional[str] = None
    from_agent_id: Optional[str] = None

class VerifyPaymentRequest(BaseModel):
    tx_ref: Optional[str] = None

class FailPaymentRequest(BaseModel):
    reason: str = ""


def _extract_api_key(request: Request) -> str:
    """Bearer token, or the api_key query parameter."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip()
    return request.query_params.get("api_key", "")


def _require_agent_auth(agents: AgentRegistry, request: Request, agent_id: str):
    """Raise 401 without a key, 403 if the key isn't this agent's."""
    api_key = _extract_api_key(request)
    if not api_key:
        raise HTTPException(401, "API key required. Use Authorization: Bearer <key> header or api_key parameter.")
    if not agents.authenticate(agent_id, api_key):
        raise HTTPException(403, "Invalid API key for this agent")


# --- App factory ---

def create_app(
    chain: ChainClient | None = None,
    agents: AgentRegistry | None = None,
    tasks: TaskStore | None = None,
    payments: PaymentLedger | None = None,
    reputation: ReputationManager | None = None,
    events: EventBus | None = None,
    token: PermitToken = USDC,
    clock=time.time,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Missing stores default to in-memory SQLite; a missing chain client
    defaults to JSON-RPC over HTTP at AGENTNET_RPC_URL.
    """

    app = FastAPI(title="agentnet", version="1.0")

    # Defaults
    _events = events or EventBus()
    _chain = chain or HTTPChainClient()
    _agents = agents or AgentRegistry()
    _tasks = tasks or TaskStore(events=_events)
    _payments = payments or PaymentLedger(events=_events)
    _reputation = reputation or ReputationManager()
    # Reputation listens wherever the stores publish
    _reputation.subscribe(_tasks.events)
    _reputation.subscribe(_payments.events)
    # Credits whose delivery raised before a restart
    _payments.redeliver_credits()

    _executor = TaskExecutor(_chain, token=token, clock=clock)
    _verifier = PermitVerifier(_chain, _payments, _agents.wallet_of, token=token, clock=clock)

    app.state.chain = _chain
    app.state.agents = _agents
    app.state.tasks = _tasks
    app.state.payments = _payments
    app.state.reputation = _reputation
    app.state.executor = _executor
    app.state.verifier = _verifier

    def _with_agent(stats) -> dict:
        data = stats.to_dict()
        agent = _agents.get(stats.agent_id) or {}
        data["agent_name"] = agent.get("name")
        data["wallet_address"] = agent.get("wallet_address")
        data["capabilities"] = agent.get("capabilities", [])
        data["status"] = agent.get("status")
        return data

    @app.get("/health")
    async def health():
        return {"status": "ok", "chain": CHAIN_NAME, "chain_id": CHAIN_ID, "token": token.symbol}

    # --- Agents ---

    @app.post("/agents", status_code=201)
    async def register_agent(req: RegisterAgentRequest):
        """Register an agent. The API key is returned once and never again."""
        try:
            agent, api_key = _agents.register(
                req.name, req.wallet_address, req.capabilities, req.description, req.endpoint_url,
            )
        except WalletTaken as e:
            raise HTTPException(409, str(e))
        except ValueError as e:
            raise HTTPException(400, str(e))
        _reputation.create(agent["id"])
        log.info("agent %s registered (%s)", agent["id"], agent["name"])
        return {**agent, "api_key": api_key}

    @app.get("/agents")
    async def list_agents(capability: str = "", search: str = "", status: str = ""):
        return _agents.list(capability=capability or None, search=search or None, status=status or None)

    @app.get("/agents/stats")
    async def agent_stats():
        return _agents.stats()

    @app.get("/agents/{agent_id}")
    async def get_agent(agent_id: str):
        agent = _agents.get(agent_id)
        if not agent:
            raise HTTPException(404, "Agent not found")
        return agent

    @app.patch("/agents/{agent_id}")
    async def update_agent(agent_id: str, req: UpdateAgentRequest, request: Request):
        if not _agents.get(agent_id):
            raise HTTPException(404, "Agent not found")
        _require_agent_auth(_agents, request, agent_id)
        return _agents.update(agent_id, **req.model_dump())

    # --- Tasks ---

    @app.post("/tasks", status_code=201)
    async def create_task(req: CreateTaskRequest, request: Request):
        """Create a pending task. Authenticated as the requester."""
        _require_agent_auth(_agents, request, req.requester_agent_id)
        if not _agents.get(req.target_agent_id):
            raise HTTPException(404, "Target agent not found")
        return _tasks.create(req.requester_agent_id, req.target_agent_id, req.task_type, req.payload)

    @app.get("/tasks")
    async def list_tasks(status: str = "", agent_id: str = "", limit: int = 100):
        return _tasks.list(status=status or None, agent_id=agent_id or None, limit=min(limit, 500))

    @app.get("/tasks/stats")
    async def task_stats():
        return _tasks.stats()

    @app.get("/tasks/types")
    async def task_types():
        return TASK_TYPES

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str):
        task = _tasks.get(task_id)
        if not task:
            raise HTTPException(404, "Task not found")
        return task

    @app.patch("/tasks/{task_id}/status")
    async def update_task_status(task_id: str, req: TaskStatusRequest):
        if req.status not in {s.value for s in TaskState}:
            raise HTTPException(400, f"Invalid status: {req.status}")
        try:
            task = _tasks.update_status(task_id, req.status, req.result, req.proof_hash)
        except ValueError as e:
            raise HTTPException(409, str(e))
        if task is None:
            raise HTTPException(404, "Task not found")
        return task

    @app.post("/tasks/execute")
    async def execute_task(req: ExecuteTaskRequest):
        """Run a task against the chain. Returns the result and its proof hash.

        With a task_id, the result is stored on the task and the first result
        decides its terminal state.
        """
        task_type, task_input = req.task_type, req.input
        if req.task_id:
            task = _tasks.get(req.task_id)
            if not task:
                raise HTTPException(404, "Task not found")
            task_type = task_type or task["task_type"]
            if task_input is None:
                task_input = task["payload"].get("input")
        if not task_type:
            raise HTTPException(400, "task_type is required")

        result = (await _executor.execute(task_type, task_input)).to_dict()
        proof = proof_hash(req.task_id, result, int(clock() * 1000))
        if req.task_id:
            _tasks.record_result(req.task_id, result, proof)
        return {"result": result, "proof_hash": proof}

    # --- Payments ---

    @app.post("/payments", status_code=201)
    async def create_payment(req: CreatePaymentRequest):
        for agent_id in (req.from_agent_id, req.to_agent_id):
            if agent_id and not _agents.get(agent_id):
                raise HTTPException(404, f"Agent not found: {agent_id}")
        try:
            return _payments.create(**req.model_dump())
        except DuplicatePermitError as e:
            raise HTTPException(409, str(e))
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.get("/payments")
    async def list_payments(status: str = "", agent_id: str = "", limit: int = 100):
        return _payments.list(status=status or None, agent_id=agent_id or None, limit=min(limit, 500))

    @app.get("/payments/stats")
    async def payment_stats():
        return _payments.stats()

    # Declared before /payments/{payment_id}/verify so "permit" isn't taken as an id
    @app.post("/payments/permit/verify")
    async def verify_permit(req: PermitVerifyRequest):
        """Check a gasless permit. Rejections carry {valid: false, reason, error}."""
        fields = req.model_dump(exclude={"from_agent_id"})
        try:
            result = await _verifier.verify(fields, req.from_agent_id)
        except PermitRejected as e:
            return JSONResponse(status_code=e.status_code, content=e.to_dict())
        return result.to_dict()

    @app.get("/payments/{payment_id}")
    async def get_payment(payment_id: str):
        payment = _payments.get(payment_id)
        if not payment:
            raise HTTPException(404, "Payment not found")
        return payment

    @app.post("/payments/{payment_id}/verify")
    async def verify_payment(payment_id: str, req: VerifyPaymentRequest):
        """Settle a payment. The payee is credited once, however often this is called."""
        try:
            return _payments.mark_verified(payment_id, req.tx_ref)
        except PaymentNotFound:
            raise HTTPException(404, "Payment not found")
        except DuplicatePermitError as e:
            raise HTTPException(409, str(e))
        except ValueError as e:
            raise HTTPException(409, str(e))

    @app.post("/payments/{payment_id}/fail")
    async def fail_payment(payment_id: str, req: FailPaymentRequest):
        try:
            return _payments.mark_failed(payment_id, req.reason)
        except PaymentNotFound:
            raise HTTPException(404, "Payment not found")
        except ValueError as e:
            raise HTTPException(409, str(e))

    # --- Reputation ---

    @app.get("/reputation")
    async def list_reputation():
        return [_with_agent(s) for s in _reputation.list_all()]

    @app.get("/reputation/leaderboard")
    async def leaderboard():
        return [_with_agent(s) for s in _reputation.leaderboard()]

    @app.get("/reputation/{agent_id}")
    async def get_reputation(agent_id: str):
        stats = _reputation.query(agent_id)
        if not stats:
            raise HTTPException(404, "Reputation not found")
        return _with_agent(stats)

    # --- Dashboard ---

    @app.get("/dashboard/overview")
    async def dashboard_overview():
        """Platform summary: counts, 30-day activity, latest tasks, top agents."""
        since = time.time() - ACTIVITY_WINDOW
        agent_stats = _agents.stats()
        task_stats = _tasks.stats()
        task_counts = {s["status"]: s["count"] for s in task_stats["by_status"]}
        payment_stats = _payments.stats()
        payment_counts = {s["status"]: s["count"] for s in payment_stats["by_status"]}

        recent_tasks = []
        for task in _tasks.list(limit=5):
            requester = _agents.get(task["requester_agent_id"]) or {}
            target = _agents.get(task["target_agent_id"]) or {}
            recent_tasks.append({**task, "requester_name": requester.get("name"),
                                 "target_name": target.get("name")})

        return {
            "agents": {"total": agent_stats["total"], "active": agent_stats["active"]},
            "tasks": {
                "total": task_stats["total"],
                "completed": task_counts.get(TaskState.COMPLETED.value, 0),
                "pending": task_counts.get(TaskState.PENDING.value, 0),
                "failed": task_counts.get(TaskState.FAILED.value, 0),
                "recent_activity": _tasks.activity(since),
            },
            "payments": {
                "total": payment_stats["total"],
                "total_amount": payment_stats["total_amount"],
                "verified": payment_counts.get(PaymentState.VERIFIED.value, 0),
                "recent_activity": _payments.activity(since),
            },
            "recent_tasks": recent_tasks,
            "top_agents": [_with_agent(s) for s in _reputation.leaderboard(5)],
        }

    return app
