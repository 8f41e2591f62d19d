# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Agent registry for agentnet.

Agents register a wallet (the permit owner the verifier checks against)
and receive an API key once; only its SHA-256 hash is stored.
"""

import json
import sqlite3
import threading
import time
import uuid

import abi
from crypto import generate_api_key, hash_api_key, verify_api_key


class WalletTaken(ValueError):
    """Another agent already registered this wallet."""


class AgentRegistry:
    """SQLite-backed agent records."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                wallet_address TEXT UNIQUE,
                capabilities TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL DEFAULT 'active',
                description TEXT NOT NULL DEFAULT '',
                endpoint_url TEXT NOT NULL DEFAULT '',
                api_key_hash TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.commit()

    def register(self, name: str, wallet_address: str | None = None, capabilities: list[str] | None = None,
                 description: str = "", endpoint_url: str = "") -> tuple[dict, str]:
        """Create an agent. Returns (agent, api_key); the key is not retrievable later.

        Raises ValueError on a malformed or already registered wallet.
        """
        if not name:
            raise ValueError("Agent name is required")
        if wallet_address and not abi.is_address(wallet_address):
            raise ValueError(f"Invalid wallet address: {wallet_address}")
        api_key = generate_api_key()
        agent_id = uuid.uuid4().hex[:16]
        now = time.time()
        try:
            self.db.execute(
                "INSERT INTO agents (id, name, wallet_address, capabilities, description, endpoint_url, api_key_hash, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (agent_id, name, wallet_address or None, json.dumps(capabilities or []),
                 description, endpoint_url, hash_api_key(api_key), now, now),
            )
            self.db.commit()
        except sqlite3.IntegrityError:
            self.db.rollback()
            raise WalletTaken(f"Wallet already registered: {wallet_address}")
        return self.get(agent_id), api_key

    def get(self, agent_id: str) -> dict | None:
        row = self.db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def wallet_of(self, agent_id: str) -> str | None:
        """Wallet on file for the agent, or None if unknown or walletless."""
        row = self.db.execute("SELECT wallet_address FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return row["wallet_address"] if row else None

    def list(self, capability: str | None = None, search: str | None = None,
             status: str | None = None) -> list[dict]:
        rows = self.db.execute("SELECT * FROM agents ORDER BY created_at DESC").fetchall()
        agents = [self._row_to_dict(r) for r in rows]
        if capability:
            agents = [a for a in agents if capability in a["capabilities"]]
        if search:
            needle = search.lower()
            agents = [a for a in agents if needle in a["name"].lower() or needle in a["description"].lower()]
        if status:
            agents = [a for a in agents if a["status"] == status]
        return agents

    def stats(self) -> dict:
        agents = self.list()
        counts: dict[str, int] = {}
        for a in agents:
            for cap in a["capabilities"]:
                counts[cap] = counts.get(cap, 0) + 1
        top = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:10]
        return {
            "total": len(agents),
            "active": sum(1 for a in agents if a["status"] == "active"),
            "top_capabilities": [{"capability": cap, "count": n} for cap, n in top],
        }

    def update(self, agent_id: str, **fields) -> dict | None:
        """Update name/capabilities/status/description/endpoint_url. None fields are left alone."""
        allowed = ("name", "capabilities", "status", "description", "endpoint_url")
        updates = []
        params = []
        for key in allowed:
            value = fields.get(key)
            if value is None:
                continue
            updates.append(f"{key} = ?")
            params.append(json.dumps(value) if key == "capabilities" else value)
        with self._lock:
            if updates:
                updates.append("updated_at = ?")
                params.extend([time.time(), agent_id])
                self.db.execute(f"UPDATE agents SET {', '.join(updates)} WHERE id = ?", params)
                self.db.commit()
            return self.get(agent_id)

    def authenticate(self, agent_id: str, api_key: str) -> bool:
        """Constant-time check of an API key against the agent's stored hash."""
        row = self.db.execute("SELECT api_key_hash FROM agents WHERE id = ?", (agent_id,)).fetchone()
        if not row:
            return False
        return verify_api_key(api_key, row["api_key_hash"])

    def _row_to_dict(self, row) -> dict:
        return {
            "id": row["id"],
            "name": row["name"],
            "wallet_address": row["wallet_address"],
            "capabilities": json.loads(row["capabilities"]),
            "status": row["status"],
            "description": row["description"],
            "endpoint_url": row["endpoint_url"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def close(self):
        self.db.close()
