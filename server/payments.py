# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Payment ledger for agentnet.

Settlement state machine persisted in SQLite:

    pending -> signed -> verified
    pending -> verified          (no permit attached, settled by tx reference)
    pending | signed -> failed

verified and failed are terminal. A permit signature can back at most one
verified payment: a partial unique index enforces it and every transition
is a conditional UPDATE, so only one writer lands.

Permit receipts record each signature the verifier has consumed, so the
same permit cannot pass verification twice even when requests race. A
payment carrying a permit settles only once its signature has a receipt.
Signatures are stored and compared in canonical lowercase form.

The payee credit is an outbox: credited_at stays NULL until every
PaymentVerified handler returned. A verified payment with no credited_at
is redelivered by the next mark_verified call or by redeliver_credits();
consumers ignore a payment_id they have already applied.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from decimal import Decimal, InvalidOperation

from crypto import canonical_signature
from protocol import (
    DEFAULT_CURRENCY, DEFAULT_PAYMENT_METHOD, NETWORK, PAYMENT_TRANSITIONS,
    PERMIT_PAYMENT_METHOD, PaymentState,
)
from server.events import EventBus, PaymentVerified

log = logging.getLogger(__name__)


class PaymentNotFound(LookupError):
    pass


class DuplicatePermitError(Exception):
    """The permit signature already backs a verified payment (or was consumed)."""

    def __init__(self, signature: str, payment_id: str | None = None):
        where = f" (payment #{payment_id})" if payment_id else ""
        super().__init__(f"Duplicate permit: this signature was already verified{where}")
        self.signature = signature
        self.payment_id = payment_id


class PermitNotVerified(ValueError):
    """The payment carries a permit that never passed verification."""


def _canonical(signature: str | None) -> str | None:
    return canonical_signature(signature) if signature else None


def parse_amount(amount) -> Decimal:
    """Amount as a non-negative Decimal. Raises ValueError."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid amount: {amount!r}")
    return value


class PaymentLedger:
    """SQLite-backed payments with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:", events: EventBus | None = None):
        self.events = events or EventBus()
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                task_id TEXT,
                from_agent_id TEXT,
                to_agent_id TEXT,
                amount TEXT NOT NULL DEFAULT '0',
                currency TEXT NOT NULL DEFAULT 'USDC',
                network TEXT NOT NULL DEFAULT 'base',
                payment_method TEXT NOT NULL DEFAULT 'x402',
                status TEXT NOT NULL DEFAULT 'pending',
                tx_hash TEXT,
                tx_ref TEXT,
                permit_signature TEXT,
                permit_deadline INTEGER,
                permit_nonce TEXT,
                permit_v INTEGER,
                permit_r TEXT,
                permit_s TEXT,
                failure_reason TEXT,
                created_at REAL NOT NULL,
                verified_at REAL,
                credited_at REAL
            )
        """)
        # One verified payment per signature
        self.db.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_verified_signature
            ON payments(permit_signature) WHERE status = 'verified'
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_payment_status ON payments(status)")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS permit_receipts (
                signature TEXT PRIMARY KEY,
                permit_hash TEXT NOT NULL,
                owner TEXT NOT NULL,
                consumed_at REAL NOT NULL
            )
        """)
        self.db.commit()

    # --- Create / read ---

    def create(self, task_id: str | None, from_agent_id: str | None, to_agent_id: str | None,
               amount, currency: str | None = None, network: str | None = None,
               payment_method: str | None = None, tx_hash: str | None = None,
               permit_signature: str | None = None, permit_deadline: int | None = None,
               permit_nonce=None, permit_v: int | None = None,
               permit_r: str | None = None, permit_s: str | None = None) -> dict:
        """Store a new payment. Starts `signed` when it carries a permit, else `pending`.

        Raises DuplicatePermitError if the signature already backs a verified
        payment, ValueError for a bad amount or malformed signature.
        """
        value = parse_amount(amount)
        permit_signature = _canonical(permit_signature)
        if permit_signature:
            spent = self._verified_payment_for(permit_signature)
            if spent:
                raise DuplicatePermitError(permit_signature, spent)
            status = PaymentState.SIGNED.value
            method = payment_method or PERMIT_PAYMENT_METHOD
        else:
            status = PaymentState.PENDING.value
            method = payment_method or DEFAULT_PAYMENT_METHOD

        payment_id = uuid.uuid4().hex[:16]
        self.db.execute(
            """INSERT INTO payments (id, task_id, from_agent_id, to_agent_id, amount, currency, network,
               payment_method, status, tx_hash, permit_signature, permit_deadline, permit_nonce,
               permit_v, permit_r, permit_s, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (payment_id, task_id, from_agent_id, to_agent_id, str(value),
             currency or DEFAULT_CURRENCY, network or NETWORK, method, status, tx_hash,
             permit_signature, permit_deadline,
             str(permit_nonce) if permit_nonce is not None else None,
             permit_v, permit_r, permit_s, time.time()),
        )
        self.db.commit()
        log.info("payment %s created: %s %s (%s)", payment_id, value, currency or DEFAULT_CURRENCY, status)
        return self.get(payment_id)

    def get(self, payment_id: str) -> dict | None:
        row = self.db.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def list(self, status: str | None = None, agent_id: str | None = None, limit: int = 100) -> list[dict]:
        """Payments newest first, optionally by status and/or party (payer or payee)."""
        query = "SELECT * FROM payments"
        conditions = []
        params: list = []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if agent_id:
            conditions.append("(from_agent_id = ? OR to_agent_id = ?)")
            params.extend([agent_id, agent_id])
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_dict(r) for r in self.db.execute(query, params).fetchall()]

    def stats(self) -> dict:
        rows = self.db.execute("SELECT status, amount FROM payments").fetchall()
        by_status: dict[str, dict] = {}
        total_amount = Decimal("0")
        for r in rows:
            amount = Decimal(r["amount"])
            total_amount += amount
            entry = by_status.setdefault(r["status"], {"status": r["status"], "count": 0, "total": Decimal("0")})
            entry["count"] += 1
            entry["total"] += amount
        return {
            "total": len(rows),
            "total_amount": str(total_amount),
            "by_status": [
                {"status": e["status"], "count": e["count"], "total": str(e["total"])}
                for e in sorted(by_status.values(), key=lambda e: e["status"])
            ],
        }

    def activity(self, since: float) -> list[dict]:
        """Payments created per UTC day after *since*, oldest day first."""
        rows = self.db.execute(
            """SELECT date(created_at, 'unixepoch') AS date, COUNT(*) AS count FROM payments
               WHERE created_at > ? GROUP BY date ORDER BY date""",
            (since,),
        ).fetchall()
        return [{"date": r["date"], "count": r["count"]} for r in rows]

    # --- Permit replay protection ---

    def _verified_payment_for(self, signature: str) -> str | None:
        row = self.db.execute(
            "SELECT id FROM payments WHERE permit_signature = ? AND status = 'verified'",
            (_canonical(signature),),
        ).fetchone()
        return row["id"] if row else None

    def is_signature_spent(self, signature: str) -> bool:
        """True if the signature backs a verified payment or was consumed by the verifier."""
        if self._verified_payment_for(signature):
            return True
        return self.receipt(signature) is not None

    def consume_permit(self, signature: str, permit_hash: str, owner: str) -> bool:
        """Record a verified permit. False if another request consumed it first."""
        signature = _canonical(signature)
        with self._lock:
            try:
                self.db.execute(
                    "INSERT INTO permit_receipts (signature, permit_hash, owner, consumed_at) VALUES (?, ?, ?, ?)",
                    (signature, permit_hash, owner.lower(), time.time()),
                )
                self.db.commit()
            except sqlite3.IntegrityError:
                self.db.rollback()
                return False
        return True

    def receipt(self, signature: str) -> dict | None:
        row = self.db.execute("SELECT * FROM permit_receipts WHERE signature = ?",
                              (_canonical(signature),)).fetchone()
        return dict(row) if row else None

    # --- Transitions ---

    def _check_transition(self, current: str, target: PaymentState, payment_id: str):
        valid_next = PAYMENT_TRANSITIONS.get(PaymentState(current), set())
        if target not in valid_next:
            raise ValueError(f"Invalid payment transition for {payment_id}: {current} -> {target.value}")

    def mark_signed(self, payment_id: str, permit_signature: str, permit_deadline: int | None = None,
                    permit_nonce=None, permit_v: int | None = None,
                    permit_r: str | None = None, permit_s: str | None = None) -> dict:
        """Attach a permit to a pending payment."""
        permit_signature = canonical_signature(permit_signature)
        with self._lock:
            row = self.db.execute("SELECT status FROM payments WHERE id = ?", (payment_id,)).fetchone()
            if not row:
                raise PaymentNotFound(payment_id)
            self._check_transition(row["status"], PaymentState.SIGNED, payment_id)
            spent = self._verified_payment_for(permit_signature)
            if spent:
                raise DuplicatePermitError(permit_signature, spent)
            cursor = self.db.execute(
                """UPDATE payments SET status = 'signed', payment_method = ?, permit_signature = ?,
                   permit_deadline = ?, permit_nonce = ?, permit_v = ?, permit_r = ?, permit_s = ?
                   WHERE id = ? AND status = 'pending'""",
                (PERMIT_PAYMENT_METHOD, permit_signature, permit_deadline,
                 str(permit_nonce) if permit_nonce is not None else None,
                 permit_v, permit_r, permit_s, payment_id),
            )
            self.db.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"Payment {payment_id} changed state concurrently")
        return self.get(payment_id)

    def mark_verified(self, payment_id: str, tx_ref: str | None = None) -> dict:
        """Settle a payment. Credits the payee exactly once via PaymentVerified.

        Verifying an already verified payment returns it unchanged, after
        redelivering its credit if an earlier delivery raised.
        Raises PaymentNotFound, DuplicatePermitError, PermitNotVerified (permit
        without a receipt), or ValueError (failed payment).
        """
        with self._lock:
            row = self.db.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
            if not row:
                raise PaymentNotFound(payment_id)
            if row["status"] != PaymentState.VERIFIED.value:
                self._settle(row, tx_ref)
                log.info("payment %s verified (tx_ref=%s)", payment_id, tx_ref)
            payment = self.get(payment_id)

        self._deliver_credit(payment)
        return self.get(payment_id)

    def _settle(self, row, tx_ref: str | None):
        """Move a pending/signed row to verified. Caller holds the lock."""
        payment_id = row["id"]
        self._check_transition(row["status"], PaymentState.VERIFIED, payment_id)

        signature = row["permit_signature"]
        if signature:
            spent = self._verified_payment_for(signature)
            if spent:
                log.warning("replay: payment %s reuses signature already verified by %s", payment_id, spent)
                raise DuplicatePermitError(signature, spent)
            if self.receipt(signature) is None:
                log.warning("payment %s: permit %s... has no verification receipt", payment_id, signature[:18])
                raise PermitNotVerified(f"Permit for payment {payment_id} has not passed verification")

        try:
            cursor = self.db.execute(
                """UPDATE payments SET status = 'verified', tx_ref = ?, verified_at = ?
                   WHERE id = ? AND status IN ('pending', 'signed')""",
                (tx_ref, time.time(), payment_id),
            )
            self.db.commit()
        except sqlite3.IntegrityError:
            self.db.rollback()
            log.warning("replay: payment %s lost the race for its signature", payment_id)
            raise DuplicatePermitError(signature)
        if cursor.rowcount == 0:
            raise ValueError(f"Payment {payment_id} changed state concurrently")

    def _deliver_credit(self, payment: dict):
        """Publish PaymentVerified for an uncredited payment, then mark it credited.

        A handler error leaves credited_at NULL and propagates.
        """
        if payment["status"] != PaymentState.VERIFIED.value:
            return
        if not payment["to_agent_id"] or payment["credited_at"] is not None:
            return
        try:
            self.events.publish(PaymentVerified(
                payment_id=payment["id"],
                payee_agent_id=payment["to_agent_id"],
                amount=Decimal(payment["amount"]),
                tx_ref=payment["tx_ref"] or "",
            ))
        except Exception:
            log.warning("payment %s verified but credit delivery failed; will redeliver", payment["id"])
            raise
        with self._lock:
            self.db.execute(
                "UPDATE payments SET credited_at = ? WHERE id = ? AND credited_at IS NULL",
                (time.time(), payment["id"]),
            )
            self.db.commit()

    def pending_credits(self) -> list[dict]:
        """Verified payments whose payee credit has not been delivered."""
        rows = self.db.execute(
            """SELECT * FROM payments WHERE status = 'verified' AND to_agent_id IS NOT NULL
               AND credited_at IS NULL ORDER BY verified_at""",
        ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def redeliver_credits(self) -> int:
        """Deliver every pending credit. Returns how many were delivered."""
        delivered = 0
        for payment in self.pending_credits():
            try:
                self._deliver_credit(payment)
            except Exception:
                log.exception("redelivery of payment %s failed", payment["id"])
                continue
            delivered += 1
        if delivered:
            log.info("redelivered %d payment credit(s)", delivered)
        return delivered

    def mark_failed(self, payment_id: str, reason: str = "") -> dict:
        """Fail a non-terminal payment. Failing a failed payment is a no-op."""
        with self._lock:
            row = self.db.execute("SELECT status FROM payments WHERE id = ?", (payment_id,)).fetchone()
            if not row:
                raise PaymentNotFound(payment_id)
            if row["status"] == PaymentState.FAILED.value:
                return self.get(payment_id)
            self._check_transition(row["status"], PaymentState.FAILED, payment_id)
            self.db.execute(
                "UPDATE payments SET status = 'failed', failure_reason = ? WHERE id = ? AND status IN ('pending', 'signed')",
                (reason or None, payment_id),
            )
            self.db.commit()
        log.info("payment %s failed: %s", payment_id, reason)
        return self.get(payment_id)

    def _row_to_dict(self, row) -> dict:
        return {
            "id": row["id"],
            "task_id": row["task_id"],
            "from_agent_id": row["from_agent_id"],
            "to_agent_id": row["to_agent_id"],
            "amount": row["amount"],
            "currency": row["currency"],
            "network": row["network"],
            "payment_method": row["payment_method"],
            "status": row["status"],
            "tx_hash": row["tx_hash"],
            "tx_ref": row["tx_ref"],
            "permit_signature": row["permit_signature"],
            "permit_deadline": row["permit_deadline"],
            "permit_nonce": row["permit_nonce"],
            "permit_v": row["permit_v"],
            "permit_r": row["permit_r"],
            "permit_s": row["permit_s"],
            "failure_reason": row["failure_reason"],
            "created_at": row["created_at"],
            "verified_at": row["verified_at"],
            "credited_at": row["credited_at"],
        }

    def close(self):
        self.db.close()
