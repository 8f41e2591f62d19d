# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Task storage for agentnet.

SQLite-backed CRUD + query by status/agent. Enforces the task state
machine (pending -> completed | failed) and publishes TaskCompleted /
TaskFailed once per task, from the writer whose transition lands.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid

from protocol import TASK_TRANSITIONS, TaskState
from server.events import EventBus, TaskCompleted, TaskFailed

log = logging.getLogger(__name__)


class TaskStore:
    """SQLite-backed task storage with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:", events: EventBus | None = None):
        self.events = events or EventBus()
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                requester_agent_id TEXT,
                target_agent_id TEXT,
                task_type TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'pending',
                result TEXT,
                proof_hash TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_task_status ON tasks(status)")
        self.db.commit()

    def create(self, requester_agent_id: str, target_agent_id: str, task_type: str,
               payload: dict | None = None) -> dict:
        """Store a new pending task."""
        task_id = uuid.uuid4().hex[:16]
        now = time.time()
        self.db.execute(
            "INSERT INTO tasks (id, requester_agent_id, target_agent_id, task_type, payload, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (task_id, requester_agent_id, target_agent_id, task_type, json.dumps(payload or {}), now, now),
        )
        self.db.commit()
        return self.get(task_id)

    def get(self, task_id: str) -> dict | None:
        """Get a task by ID."""
        row = self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def list(self, status: str | None = None, agent_id: str | None = None, limit: int = 100) -> list[dict]:
        """Tasks newest first, optionally by status and/or agent (requester or target)."""
        query = "SELECT * FROM tasks"
        conditions = []
        params: list = []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if agent_id:
            conditions.append("(requester_agent_id = ? OR target_agent_id = ?)")
            params.extend([agent_id, agent_id])
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_dict(r) for r in self.db.execute(query, params).fetchall()]

    def stats(self) -> dict:
        rows = self.db.execute("SELECT status, COUNT(*) AS count FROM tasks GROUP BY status ORDER BY status").fetchall()
        return {
            "total": sum(r["count"] for r in rows),
            "by_status": [{"status": r["status"], "count": r["count"]} for r in rows],
        }

    def activity(self, since: float) -> list[dict]:
        """Tasks created per UTC day after *since*, oldest day first."""
        rows = self.db.execute(
            """SELECT date(created_at, 'unixepoch') AS date, COUNT(*) AS count FROM tasks
               WHERE created_at > ? GROUP BY date ORDER BY date""",
            (since,),
        ).fetchall()
        return [{"date": r["date"], "count": r["count"]} for r in rows]

    def update_status(self, task_id: str, status: str, result: dict | None = None,
                      proof_hash: str | None = None) -> dict | None:
        """Move a task to *status*. Returns the task, or None if it doesn't exist.

        Repeating a terminal write is a no-op. Raises ValueError on an
        invalid transition.
        """
        with self._lock:
            row = self.db.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if not row:
                return None

            current = row["status"]
            try:
                current_state = TaskState(current)
                new_state = TaskState(status)
            except ValueError:
                raise ValueError(f"Invalid state: {current} -> {status}")

            if current_state == new_state and not TASK_TRANSITIONS[current_state]:
                return self.get(task_id)
            if new_state not in TASK_TRANSITIONS.get(current_state, set()):
                raise ValueError(f"Invalid state transition: {current} -> {status}")

            cursor = self.db.execute(
                "UPDATE tasks SET status = ?, result = ?, proof_hash = ?, updated_at = ? WHERE id = ? AND status = ?",
                (status, json.dumps(result) if result is not None else None, proof_hash,
                 time.time(), task_id, current),
            )
            self.db.commit()
            landed = cursor.rowcount > 0
            task = self.get(task_id)

        if landed:
            self._publish(task)
        return task

    def record_result(self, task_id: str, result: dict, proof_hash: str) -> dict | None:
        """Store an execution result. The first result decides the task's terminal state.

        A re-execution of a finished task replaces the stored result and proof
        hash but keeps the status and does not publish again.
        """
        status = TaskState.COMPLETED.value if result.get("status") == "completed" else TaskState.FAILED.value
        with self._lock:
            row = self.db.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if not row:
                return None
            now = time.time()
            cursor = self.db.execute(
                "UPDATE tasks SET status = ?, result = ?, proof_hash = ?, updated_at = ? WHERE id = ? AND status = 'pending'",
                (status, json.dumps(result), proof_hash, now, task_id),
            )
            landed = cursor.rowcount > 0
            if not landed:
                self.db.execute(
                    "UPDATE tasks SET result = ?, proof_hash = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(result), proof_hash, now, task_id),
                )
            self.db.commit()
            task = self.get(task_id)

        if landed:
            self._publish(task)
        return task

    def _publish(self, task: dict):
        if not task["target_agent_id"]:
            return
        if task["status"] == TaskState.COMPLETED.value:
            self.events.publish(TaskCompleted(task_id=task["id"], agent_id=task["target_agent_id"]))
        elif task["status"] == TaskState.FAILED.value:
            log.info("task %s failed", task["id"])
            self.events.publish(TaskFailed(task_id=task["id"], agent_id=task["target_agent_id"]))

    def _row_to_dict(self, row) -> dict:
        return {
            "id": row["id"],
            "requester_agent_id": row["requester_agent_id"],
            "target_agent_id": row["target_agent_id"],
            "task_type": row["task_type"],
            "payload": json.loads(row["payload"]),
            "status": row["status"],
            "result": json.loads(row["result"]) if row["result"] else None,
            "proof_hash": row["proof_hash"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def close(self):
        self.db.close()
