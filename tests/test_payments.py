"""Tests for server/payments.py: settlement state machine and replay protection."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import threading
import unittest
from decimal import Decimal

from server.events import EventBus, PaymentVerified
from server.payments import (
    DuplicatePermitError, PaymentLedger, PaymentNotFound, PermitNotVerified, parse_amount,
)
from server.reputation import ReputationManager

SIG_A = "0x" + "aa" * 64 + "1b"
SIG_B = "0x" + "bb" * 64 + "1c"


class LedgerTestCase(unittest.TestCase):
    def setUp(self):
        self.events = EventBus()
        self.verified = []
        self.events.subscribe(PaymentVerified, self.verified.append)
        self.ledger = PaymentLedger(":memory:", events=self.events)

    def tearDown(self):
        self.ledger.close()

    def permit_payment(self, signature=SIG_A, amount="0.5"):
        return self.ledger.create("task1", "payer", "payee", amount, permit_signature=signature,
                                  permit_deadline=1_700_003_600, permit_nonce=0,
                                  permit_v=27, permit_r="0x" + "aa" * 32, permit_s="0x" + "aa" * 32)

    def settle(self, payment, tx_ref="0xref"):
        """Consume the payment's permit the way the verifier does, then settle it."""
        if payment["permit_signature"]:
            self.ledger.consume_permit(payment["permit_signature"], "0xhash", "0xabc")
        return self.ledger.mark_verified(payment["id"], tx_ref)


class TestCreate(LedgerTestCase):
    def test_plain_payment_is_pending(self):
        p = self.ledger.create("task1", "payer", "payee", "0.001")
        self.assertEqual(p["status"], "pending")
        self.assertEqual(p["payment_method"], "x402")
        self.assertEqual(p["currency"], "USDC")
        self.assertEqual(p["network"], "base")
        self.assertEqual(p["amount"], "0.001")
        self.assertIsNone(p["permit_signature"])

    def test_permit_payment_is_signed(self):
        p = self.permit_payment()
        self.assertEqual(p["status"], "signed")
        self.assertEqual(p["payment_method"], "gasless_permit")
        self.assertEqual(p["permit_signature"], SIG_A)
        self.assertEqual(p["permit_nonce"], "0")
        self.assertEqual(p["permit_v"], 27)

    def test_amount_kept_exact(self):
        p = self.ledger.create(None, "payer", "payee", Decimal("0.000001"))
        self.assertEqual(Decimal(p["amount"]), Decimal("0.000001"))

    def test_invalid_amount(self):
        for bad in ("abc", "-1", "NaN", None):
            with self.assertRaises(ValueError):
                self.ledger.create(None, "payer", "payee", bad)

    def test_create_with_verified_signature_is_duplicate(self):
        p = self.permit_payment()
        self.settle(p)
        with self.assertRaises(DuplicatePermitError) as ctx:
            self.permit_payment()
        self.assertEqual(ctx.exception.payment_id, p["id"])

    def test_unverified_signature_may_repeat(self):
        """Only verified rows must be unique; a retried payment can carry the same permit."""
        a = self.permit_payment()
        self.ledger.mark_failed(a["id"], "chain down")
        b = self.permit_payment()
        self.assertEqual(b["status"], "signed")


class TestTransitions(LedgerTestCase):
    def test_signed_to_verified_credits_once(self):
        p = self.permit_payment(amount="0.25")
        v = self.settle(p)
        self.assertEqual(v["status"], "verified")
        self.assertEqual(v["tx_ref"], "0xref")
        self.assertIsNotNone(v["verified_at"])
        self.assertEqual(len(self.verified), 1)
        self.assertEqual(self.verified[0].payee_agent_id, "payee")
        self.assertEqual(self.verified[0].amount, Decimal("0.25"))

    def test_repeat_verification_is_noop(self):
        p = self.permit_payment()
        first = self.settle(p)
        again = self.ledger.mark_verified(p["id"], "0xother")
        self.assertEqual(again, first)
        self.assertEqual(len(self.verified), 1)

    def test_pending_to_verified_without_permit(self):
        p = self.ledger.create("task1", "payer", "payee", "1", tx_hash="0x" + "12" * 32)
        v = self.ledger.mark_verified(p["id"], "0x" + "12" * 32)
        self.assertEqual(v["status"], "verified")
        self.assertEqual(len(self.verified), 1)

    def test_second_payment_same_signature_rejected_before_credit(self):
        a = self.permit_payment()
        b = self.permit_payment()
        self.settle(a)
        with self.assertRaises(DuplicatePermitError):
            self.ledger.mark_verified(b["id"], "0xref")
        self.assertEqual(len(self.verified), 1)
        self.assertEqual(self.ledger.get(b["id"])["status"], "signed")

    def test_mark_signed(self):
        p = self.ledger.create("task1", "payer", "payee", "1")
        s = self.ledger.mark_signed(p["id"], SIG_B, permit_deadline=10, permit_nonce=3,
                                    permit_v=28, permit_r="0x01", permit_s="0x02")
        self.assertEqual(s["status"], "signed")
        self.assertEqual(s["permit_signature"], SIG_B)
        self.assertEqual(s["payment_method"], "gasless_permit")

    def test_mark_signed_twice_invalid(self):
        p = self.permit_payment()
        with self.assertRaises(ValueError):
            self.ledger.mark_signed(p["id"], SIG_B)

    def test_fail(self):
        p = self.permit_payment()
        f = self.ledger.mark_failed(p["id"], "insufficient_balance")
        self.assertEqual(f["status"], "failed")
        self.assertEqual(f["failure_reason"], "insufficient_balance")
        self.assertEqual(self.ledger.mark_failed(p["id"], "again")["failure_reason"], "insufficient_balance")

    def test_failed_is_terminal(self):
        p = self.permit_payment()
        self.ledger.mark_failed(p["id"], "x")
        with self.assertRaises(ValueError):
            self.ledger.mark_verified(p["id"], "0xref")
        self.assertEqual(self.verified, [])

    def test_verified_cannot_fail(self):
        p = self.permit_payment()
        self.settle(p)
        with self.assertRaises(ValueError):
            self.ledger.mark_failed(p["id"], "too late")

    def test_unknown_payment(self):
        with self.assertRaises(PaymentNotFound):
            self.ledger.mark_verified("nope", "0xref")
        with self.assertRaises(PaymentNotFound):
            self.ledger.mark_failed("nope")

    def test_no_payee_no_credit(self):
        p = self.ledger.create("task1", "payer", None, "1")
        self.ledger.mark_verified(p["id"], "0xref")
        self.assertEqual(self.verified, [])


class TestConcurrentVerification(LedgerTestCase):
    def test_racing_verifications_credit_once(self):
        payments = [self.permit_payment() for _ in range(8)]
        self.ledger.consume_permit(SIG_A, "0xhash", "0xabc")
        outcomes = []
        barrier = threading.Barrier(len(payments))

        def verify(pid):
            barrier.wait()
            try:
                self.ledger.mark_verified(pid, "0xref")
                outcomes.append("ok")
            except DuplicatePermitError:
                outcomes.append("dup")

        threads = [threading.Thread(target=verify, args=(p["id"],)) for p in payments]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("dup"), 7)
        self.assertEqual(len(self.verified), 1)
        self.assertEqual(len(self.ledger.list(status="verified")), 1)


class TestPermitReceipts(LedgerTestCase):
    def test_consume_once(self):
        self.assertTrue(self.ledger.consume_permit(SIG_A, "0xhash", "0xABC"))
        self.assertFalse(self.ledger.consume_permit(SIG_A, "0xhash", "0xABC"))
        self.assertEqual(self.ledger.receipt(SIG_A)["owner"], "0xabc")

    def test_spent_by_receipt_or_verified_payment(self):
        self.assertFalse(self.ledger.is_signature_spent(SIG_A))
        self.ledger.consume_permit(SIG_A, "0xhash", "0xabc")
        self.assertTrue(self.ledger.is_signature_spent(SIG_A))

        p = self.permit_payment(signature=SIG_B)
        self.assertFalse(self.ledger.is_signature_spent(SIG_B))
        self.ledger.consume_permit(SIG_B, "0xhash", "0xabc")
        self.ledger.mark_verified(p["id"], "0xref")
        self.assertTrue(self.ledger.is_signature_spent(SIG_B))


    def test_permit_without_receipt_does_not_settle(self):
        p = self.permit_payment()
        with self.assertRaises(PermitNotVerified):
            self.ledger.mark_verified(p["id"], "0xref")
        self.assertEqual(self.ledger.get(p["id"])["status"], "signed")
        self.assertEqual(self.verified, [])

    def test_receipt_for_other_signature_does_not_count(self):
        p = self.permit_payment(signature=SIG_A)
        self.ledger.consume_permit(SIG_B, "0xhash", "0xabc")
        with self.assertRaises(PermitNotVerified):
            self.ledger.mark_verified(p["id"], "0xref")


class TestCanonicalSignatures(LedgerTestCase):
    def test_stored_lowercase(self):
        p = self.permit_payment(signature=SIG_A.upper().replace("0X", "0x"))
        self.assertEqual(p["permit_signature"], SIG_A)

    def test_case_variant_is_same_signature(self):
        self.ledger.consume_permit(SIG_A, "0xhash", "0xabc")
        self.assertTrue(self.ledger.is_signature_spent(SIG_A.upper().replace("0X", "0x")))
        self.assertTrue(self.ledger.is_signature_spent(SIG_A[2:]))
        self.assertFalse(self.ledger.consume_permit(SIG_A.upper().replace("0X", "0x"), "0xhash", "0xabc"))

    def test_case_variant_cannot_back_second_payment(self):
        self.settle(self.permit_payment())
        with self.assertRaises(DuplicatePermitError):
            self.permit_payment(signature="0x" + SIG_A[2:].upper())

    def test_malformed_signature_rejected(self):
        with self.assertRaises(ValueError):
            self.permit_payment(signature="0x1234")


class TestCreditDelivery(LedgerTestCase):
    def setUp(self):
        super().setUp()
        self.failures = 1

        def flaky(event):
            if self.failures:
                self.failures -= 1
                raise RuntimeError("subscriber down")

        self.events.subscribe(PaymentVerified, flaky)

    def test_failed_delivery_keeps_payment_verified_and_pending(self):
        p = self.permit_payment()
        with self.assertRaises(RuntimeError):
            self.settle(p)
        stored = self.ledger.get(p["id"])
        self.assertEqual(stored["status"], "verified")
        self.assertIsNone(stored["credited_at"])
        self.assertEqual([x["id"] for x in self.ledger.pending_credits()], [p["id"]])

    def test_retry_delivers_credit(self):
        p = self.permit_payment()
        with self.assertRaises(RuntimeError):
            self.settle(p)
        again = self.ledger.mark_verified(p["id"], "0xref")
        self.assertIsNotNone(again["credited_at"])
        self.assertEqual(self.ledger.pending_credits(), [])
        self.assertEqual(self.ledger.mark_verified(p["id"], "0xref"), again)
        # first handler saw the failed attempt and the retry, never a third
        self.assertEqual(len(self.verified), 2)
        self.assertEqual({e.payment_id for e in self.verified}, {p["id"]})

    def test_redeliver_credits(self):
        p = self.permit_payment()
        with self.assertRaises(RuntimeError):
            self.settle(p)
        self.assertEqual(self.ledger.redeliver_credits(), 1)
        self.assertEqual(self.ledger.redeliver_credits(), 0)
        self.assertIsNotNone(self.ledger.get(p["id"])["credited_at"])

    def test_redelivery_failure_is_counted_out(self):
        self.failures = 2
        p = self.permit_payment()
        with self.assertRaises(RuntimeError):
            self.settle(p)
        self.assertEqual(self.ledger.redeliver_credits(), 0)
        self.assertEqual(len(self.ledger.pending_credits()), 1)


class TestCreditWithReputation(unittest.TestCase):
    def test_retry_after_handler_error_credits_once(self):
        events = EventBus()
        reputation = ReputationManager(":memory:", events=events)
        failures = [RuntimeError("subscriber down")]

        def flaky(event):
            if failures:
                raise failures.pop()

        # registered after reputation, so the first delivery credits and then raises
        events.subscribe(PaymentVerified, flaky)
        ledger = PaymentLedger(":memory:", events=events)
        p = ledger.create("task1", "payer", "payee", "0.5", permit_signature=SIG_A)
        ledger.consume_permit(SIG_A, "0xhash", "0xabc")

        with self.assertRaises(RuntimeError):
            ledger.mark_verified(p["id"], "0xref")
        ledger.mark_verified(p["id"], "0xref")
        ledger.redeliver_credits()

        self.assertEqual(reputation.query("payee").total_earned, Decimal("0.5"))
        self.assertEqual(ledger.pending_credits(), [])
        ledger.close()
        reputation.close()


class TestQueries(LedgerTestCase):
    def test_list_filters(self):
        self.ledger.create("t1", "a", "b", "1")
        self.ledger.create("t2", "b", "c", "2")
        p = self.ledger.create("t3", "c", "d", "3")
        self.ledger.mark_verified(p["id"], "0xref")
        self.assertEqual(len(self.ledger.list()), 3)
        self.assertEqual(len(self.ledger.list(agent_id="b")), 2)
        self.assertEqual([x["task_id"] for x in self.ledger.list(status="verified")], ["t3"])
        self.assertEqual(len(self.ledger.list(limit=1)), 1)

    def test_stats(self):
        self.ledger.create("t1", "a", "b", "0.1")
        self.ledger.create("t2", "a", "b", "0.2")
        p = self.ledger.create("t3", "a", "b", "0.3")
        self.ledger.mark_verified(p["id"], "0xref")
        stats = self.ledger.stats()
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["total_amount"], "0.6")
        self.assertEqual(stats["by_status"], [
            {"status": "pending", "count": 2, "total": "0.3"},
            {"status": "verified", "count": 1, "total": "0.3"},
        ])


class TestParseAmount(unittest.TestCase):
    def test_parse(self):
        self.assertEqual(parse_amount("0.001"), Decimal("0.001"))
        self.assertEqual(parse_amount(0), Decimal("0"))
        with self.assertRaises(ValueError):
            parse_amount("Infinity")


if __name__ == "__main__":
    unittest.main()
