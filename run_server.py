#!/usr/bin/env python3
# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""agentnet platform server.

Configuration from env vars:
  AGENTNET_DB          SQLite path (default /var/lib/agentnet/agentnet.db)
  AGENTNET_PORT        listen port (default 8000)
  AGENTNET_LOG_LEVEL   logging level (default INFO)
  AGENTNET_RPC_URL     JSON-RPC endpoint (default https://mainnet.base.org)
  AGENTNET_RPC_TIMEOUT seconds per RPC call (default 15)
"""

import os, sys, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn

from chain import HTTPChainClient
from protocol import CHAIN_NAME, RPC_URL
from server.agents import AgentRegistry
from server.app import create_app
from server.events import EventBus
from server.payments import PaymentLedger
from server.reputation import ReputationManager
from server.store import TaskStore

DB_PATH = os.environ.get("AGENTNET_DB", "/var/lib/agentnet/agentnet.db")
PORT = int(os.environ.get("AGENTNET_PORT", "8000"))
LOG_LEVEL = os.environ.get("AGENTNET_LOG_LEVEL", "INFO").upper()

log = logging.getLogger("server")


def build_app(db_path: str = DB_PATH):
    """Wire the stores onto one event bus and build the app."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)

        def path_for(suffix):
            return db_path.replace(".db", f"_{suffix}.db")
    else:
        def path_for(suffix):
            return ":memory:"

    events = EventBus()
    agents = AgentRegistry(db_path)
    tasks = TaskStore(path_for("tasks"), events=events)
    payments = PaymentLedger(path_for("payments"), events=events)
    reputation = ReputationManager(path_for("rep"), events=events)
    return create_app(
        chain=HTTPChainClient(),
        agents=agents,
        tasks=tasks,
        payments=payments,
        reputation=reputation,
        events=events,
    )


def main():
    logging.basicConfig(level=LOG_LEVEL, format="[%(name)s] %(levelname)s %(message)s")
    app = build_app()
    log.info("chain: %s via %s", CHAIN_NAME, RPC_URL)
    log.info("database: %s", DB_PATH)
    log.info("listening on :%d", PORT)
    uvicorn.run(app, host="0.0.0.0", port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
