# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Reputation tracking for agentnet.

SQLite-backed score and counters per agent. Mutated only through domain
events, so each terminal task/payment transition is counted once.
"""

import logging
import sqlite3
import threading
import time
import weakref
from dataclasses import dataclass, field
from decimal import Decimal

from protocol import (
    DEFAULT_SCORE, LEADERBOARD_SIZE, MAX_SCORE, MIN_SCORE,
    SCORE_ON_COMPLETED, SCORE_ON_FAILED,
)
from server.events import EventBus, PaymentVerified, TaskCompleted, TaskFailed

log = logging.getLogger(__name__)


def clamp_score(score: Decimal) -> Decimal:
    return max(MIN_SCORE, min(MAX_SCORE, score)).quantize(Decimal("0.01"))


@dataclass
class ReputationStats:
    """Reputation data model for an agent."""
    agent_id: str
    score: Decimal = field(default_factory=lambda: DEFAULT_SCORE)
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_earned: Decimal = field(default_factory=lambda: Decimal("0"))
    last_updated: float = 0.0

    def total_tasks(self) -> int:
        return self.tasks_completed + self.tasks_failed

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "score": str(self.score),
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "total_earned": str(self.total_earned),
            "last_updated": self.last_updated,
        }


class ReputationManager:
    """SQLite-backed reputation tracker."""

    def __init__(self, db_path: str = ":memory:", events: EventBus | None = None):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._buses: weakref.WeakSet = weakref.WeakSet()
        self._init_db()
        if events is not None:
            self.subscribe(events)

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS reputation (
                agent_id TEXT PRIMARY KEY,
                score TEXT NOT NULL,
                tasks_completed INTEGER NOT NULL DEFAULT 0,
                tasks_failed INTEGER NOT NULL DEFAULT 0,
                total_earned TEXT NOT NULL DEFAULT '0',
                last_updated REAL NOT NULL
            )
        """)
        # Payments already credited; redelivered events are ignored
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS payment_credits (
                payment_id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                applied_at REAL NOT NULL
            )
        """)
        self.db.commit()

    def subscribe(self, events: EventBus) -> None:
        """Listen for task and payment events on *events*. Idempotent per bus."""
        if events in self._buses:
            return
        self._buses.add(events)
        events.subscribe(TaskCompleted, lambda e: self.record_completed(e.agent_id))
        events.subscribe(TaskFailed, lambda e: self.record_failed(e.agent_id))
        events.subscribe(PaymentVerified, lambda e: self.record_earned(e.payee_agent_id, e.amount, e.payment_id))

    def create(self, agent_id: str) -> ReputationStats:
        """Start an agent at the default score. No-op if a row exists."""
        with self._lock:
            self.db.execute(
                "INSERT OR IGNORE INTO reputation (agent_id, score, last_updated) VALUES (?, ?, ?)",
                (agent_id, str(DEFAULT_SCORE), time.time()),
            )
            self.db.commit()
        return self.query(agent_id)

    def _apply(self, agent_id: str, score_delta: Decimal = Decimal("0"),
               completed: int = 0, failed: int = 0, earned: Decimal = Decimal("0"),
               payment_id: str | None = None) -> ReputationStats:
        with self._lock:
            if payment_id is not None:
                cursor = self.db.execute(
                    "INSERT OR IGNORE INTO payment_credits (payment_id, agent_id, amount, applied_at) VALUES (?, ?, ?, ?)",
                    (payment_id, agent_id, str(earned), time.time()),
                )
                if cursor.rowcount == 0:
                    log.info("payment %s already credited to %s, skipping", payment_id, agent_id)
                    return self.query(agent_id) or ReputationStats(agent_id=agent_id)
            stats = self.query(agent_id) or ReputationStats(agent_id=agent_id)
            stats.score = clamp_score(stats.score + score_delta)
            stats.tasks_completed += completed
            stats.tasks_failed += failed
            stats.total_earned += earned
            stats.last_updated = time.time()
            self.db.execute(
                """INSERT INTO reputation (agent_id, score, tasks_completed, tasks_failed, total_earned, last_updated)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(agent_id) DO UPDATE SET
                     score = excluded.score, tasks_completed = excluded.tasks_completed,
                     tasks_failed = excluded.tasks_failed, total_earned = excluded.total_earned,
                     last_updated = excluded.last_updated""",
                (agent_id, str(stats.score), stats.tasks_completed, stats.tasks_failed,
                 str(stats.total_earned), stats.last_updated),
            )
            self.db.commit()
            return stats

    def record_completed(self, agent_id: str) -> ReputationStats:
        log.info("task completed by %s: score %+s", agent_id, SCORE_ON_COMPLETED)
        return self._apply(agent_id, score_delta=SCORE_ON_COMPLETED, completed=1)

    def record_failed(self, agent_id: str) -> ReputationStats:
        log.info("task failed by %s: score %+s", agent_id, SCORE_ON_FAILED)
        return self._apply(agent_id, score_delta=SCORE_ON_FAILED, failed=1)

    def record_earned(self, agent_id: str, amount: Decimal, payment_id: str | None = None) -> ReputationStats:
        """Add *amount* to total_earned. With a payment_id, each payment counts once."""
        return self._apply(agent_id, earned=Decimal(amount), payment_id=payment_id)

    def query(self, agent_id: str) -> ReputationStats | None:
        """Get reputation stats for an agent."""
        row = self.db.execute("SELECT * FROM reputation WHERE agent_id = ?", (agent_id,)).fetchone()
        if not row:
            return None
        return self._row_to_stats(row)

    def list_all(self) -> list[ReputationStats]:
        """All agents, highest score first."""
        rows = self.db.execute("SELECT * FROM reputation").fetchall()
        # score is TEXT; order numerically
        return sorted((self._row_to_stats(r) for r in rows), key=lambda s: s.score, reverse=True)

    def leaderboard(self, limit: int = LEADERBOARD_SIZE) -> list[ReputationStats]:
        return self.list_all()[:limit]

    def _row_to_stats(self, row) -> ReputationStats:
        return ReputationStats(
            agent_id=row["agent_id"],
            score=Decimal(row["score"]),
            tasks_completed=row["tasks_completed"],
            tasks_failed=row["tasks_failed"],
            total_earned=Decimal(row["total_earned"]),
            last_updated=row["last_updated"],
        )

    def close(self):
        self.db.close()
