import hashlib
import hmac
import threading
import time
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import Mock, patch

import razorpay
import requests
from django.apps import apps
from django.core import mail
from django.db import OperationalError, connection
from django.test import Client, SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from payments.catalog import get_course_price
from payments.exceptions import (
    LedgerCommitConflict,
    LedgerReadFailure,
    LedgerWriteFailure,
    TokenNotFound,
    UnknownCourse,
    UpstreamError,
    UpstreamUnavailable,
)
from payments.ledger import TransactionLedger
from payments.models import Transaction, VerificationAttempt
from payments.services import (
    PaymentStatus,
    StatusInquiryClient,
    compute_payment_signature,
    verify_payment_signature,
)
from payments.state import ConcurrencyGate, SuccessTokenStore, VerificationState
from payments.verification import CallbackPayload, PaymentVerifier, handle_callback

SECRET = "s3cret"


def sign(order_id, payment_id, secret=SECRET):
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def gateway_payment(payment_id="pay_1", status="captured", amount=49900, method="upi"):
    raw = {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": status,
        "order_id": "order_1",
        "method": method,
    }
    return PaymentStatus(status=status, amount=amount, method=method, raw=raw)


class FakeClock:
    def __init__(self):
        self.now = timezone.now()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class InMemoryLedger:
    """Thread-safe ledger with the same atomic commit rule as the database constraint."""

    def __init__(self):
        self._lock = threading.Lock()
        self.successes = []
        self.failures = []
        self.attempts = []

    def already_processed(self, order_id, payment_id):
        with self._lock:
            return any(
                t.order_id == order_id and t.payment_id == payment_id for t in self.successes
            )

    def commit(self, order_id, payment_id, amount, method="", raw_response=None):
        with self._lock:
            if any(t.payment_id == payment_id for t in self.successes):
                raise LedgerCommitConflict(payment_id)
            txn = SimpleNamespace(
                pk=len(self.successes) + 1,
                order_id=order_id,
                payment_id=payment_id,
                amount=amount,
            )
            self.successes.append(txn)
            return txn

    def record_attempt(self, **fields):
        with self._lock:
            self.attempts.append(fields)

    def record_failure(self, order_id, payment_id, reason, raw_response=None, amount=None):
        with self._lock:
            self.failures.append((order_id, payment_id, reason))


class SignatureTests(SimpleTestCase):
    def test_known_scenario(self):
        expected = hmac.new(b"s3cret", b"order_1|pay_1", hashlib.sha256).hexdigest()
        self.assertEqual(compute_payment_signature("order_1", "pay_1", "s3cret"), expected)
        self.assertTrue(verify_payment_signature("order_1", "pay_1", expected, "s3cret"))

    def test_deterministic(self):
        first = compute_payment_signature("order_9", "pay_9", SECRET)
        second = compute_payment_signature("order_9", "pay_9", SECRET)
        self.assertEqual(first, second)

    def test_single_byte_change_flips_match(self):
        signature = sign("order_1", "pay_1")
        self.assertFalse(verify_payment_signature("order_1", "pay_2", signature, SECRET))
        self.assertFalse(verify_payment_signature("order_1", "pay_1", signature, "s3creT"))

    def test_missing_inputs_do_not_verify(self):
        self.assertFalse(verify_payment_signature("", "pay_1", sign("", "pay_1"), SECRET))
        self.assertFalse(verify_payment_signature("order_1", "pay_1", "", SECRET))
        self.assertFalse(verify_payment_signature("order_1", "pay_1", sign("order_1", "pay_1"), ""))


class ConcurrencyGateTests(SimpleTestCase):
    def test_second_acquire_fails_until_release(self):
        gate = ConcurrencyGate()
        self.assertTrue(gate.acquire("pay_1"))
        self.assertFalse(gate.acquire("pay_1"))
        self.assertTrue(gate.acquire("pay_2"))
        gate.release("pay_1")
        self.assertTrue(gate.acquire("pay_1"))

    def test_release_of_unheld_key_is_noop(self):
        gate = ConcurrencyGate()
        gate.release("pay_1")
        self.assertFalse(gate.is_held("pay_1"))


class SuccessTokenStoreTests(SimpleTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = SuccessTokenStore(ttl=300, clock=self.clock)

    def test_redeem_once(self):
        token = self.store.mint("order_1", "pay_1", 49900)
        receipt = self.store.redeem(token)
        self.assertEqual(receipt.as_dict(), {"order_id": "order_1", "payment_id": "pay_1", "amount": 49900})
        with self.assertRaises(TokenNotFound):
            self.store.redeem(token)

    def test_expired_token_is_not_found_and_deleted(self):
        token = self.store.mint("order_1", "pay_1", 49900)
        self.clock.advance(301)
        with self.assertRaises(TokenNotFound):
            self.store.redeem(token)
        self.assertEqual(len(self.store), 0)
        with self.assertRaises(TokenNotFound):
            self.store.redeem(token)

    def test_token_valid_just_before_expiry(self):
        token = self.store.mint("order_1", "pay_1", 100)
        self.clock.advance(299)
        self.assertEqual(self.store.redeem(token).payment_id, "pay_1")

    def test_tokens_are_unique_and_opaque(self):
        first = self.store.mint("order_1", "pay_1", 100)
        second = self.store.mint("order_1", "pay_1", 100)
        self.assertNotEqual(first, second)
        self.assertNotIn("pay_1", first)

    def test_mint_purges_expired_entries(self):
        self.store.mint("order_1", "pay_1", 100)
        self.clock.advance(600)
        self.store.mint("order_2", "pay_2", 100)
        self.assertEqual(len(self.store), 1)

    def test_unknown_token(self):
        with self.assertRaises(TokenNotFound):
            self.store.redeem("nope")


class StatusInquiryClientTests(SimpleTestCase):
    def setUp(self):
        self.razorpay_client = Mock()
        self.client = StatusInquiryClient(client=self.razorpay_client)

    def test_fetch_status_returns_payment(self):
        self.razorpay_client.payment.fetch.return_value = gateway_payment().raw
        status = self.client.fetch_status("pay_1")
        self.razorpay_client.payment.fetch.assert_called_once_with("pay_1")
        self.assertTrue(status.captured)
        self.assertEqual(status.amount, 49900)
        self.assertEqual(status.method, "upi")

    def test_not_captured_is_an_answer_not_an_error(self):
        self.razorpay_client.payment.fetch.return_value = gateway_payment(status="authorized").raw
        status = self.client.fetch_status("pay_1")
        self.assertFalse(status.captured)

    def test_network_failure(self):
        self.razorpay_client.payment.fetch.side_effect = requests.exceptions.ConnectionError("down")
        with self.assertRaises(UpstreamUnavailable):
            self.client.fetch_status("pay_1")

    def test_gateway_server_error(self):
        self.razorpay_client.payment.fetch.side_effect = razorpay.errors.ServerError("boom")
        with self.assertRaises(UpstreamUnavailable):
            self.client.fetch_status("pay_1")

    def test_bad_request(self):
        self.razorpay_client.payment.fetch.side_effect = razorpay.errors.BadRequestError("bad id")
        with self.assertRaises(UpstreamError) as ctx:
            self.client.fetch_status("pay_1")
        self.assertEqual(ctx.exception.code, "BAD_REQUEST_ERROR")

    @override_settings(RAZORPAY_KEY_ID="", RAZORPAY_KEY_SECRET="")
    def test_missing_keys(self):
        with self.assertRaises(UpstreamUnavailable):
            StatusInquiryClient().fetch_status("pay_1")


class TransactionLedgerTests(TestCase):
    def setUp(self):
        self.ledger = TransactionLedger()

    def test_commit_then_already_processed(self):
        self.assertFalse(self.ledger.already_processed("order_1", "pay_1"))
        txn = self.ledger.commit("order_1", "pay_1", amount=49900, method="upi", raw_response={"id": "pay_1"})
        self.assertEqual(txn.status, Transaction.STATUS_SUCCESS)
        self.assertTrue(self.ledger.already_processed("order_1", "pay_1"))

    def test_second_commit_conflicts(self):
        self.ledger.commit("order_1", "pay_1", amount=49900)
        with self.assertRaises(LedgerCommitConflict):
            self.ledger.commit("order_1", "pay_1", amount=49900)
        self.assertEqual(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).count(), 1)

    def test_failed_rows_are_not_unique(self):
        self.ledger.record_failure("order_1", "pay_1", reason="NOT_CAPTURED")
        self.ledger.record_failure("order_1", "pay_1", reason="NOT_CAPTURED")
        self.assertEqual(Transaction.objects.filter(status=Transaction.STATUS_FAILED).count(), 2)
        self.assertFalse(self.ledger.already_processed("order_1", "pay_1"))
        self.ledger.commit("order_1", "pay_1", amount=100)

    def test_write_failure(self):
        with patch.object(Transaction.objects, "create", side_effect=OperationalError("disk I/O error")):
            with self.assertRaises(LedgerWriteFailure):
                self.ledger.commit("order_1", "pay_1", amount=49900)

    def test_integrity_error_without_success_row_is_write_failure(self):
        # A negative amount breaks the column check, not the one-success rule.
        with self.assertRaises(LedgerWriteFailure):
            self.ledger.commit("order_1", "pay_1", amount=-1)
        self.assertFalse(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).exists())

    def test_read_failure(self):
        with patch.object(Transaction.objects, "filter", side_effect=OperationalError("db down")):
            with self.assertRaises(LedgerReadFailure) as ctx:
                self.ledger.already_processed("order_1", "pay_1")
        self.assertEqual(ctx.exception.code, "LEDGER_READ_FAILURE")
        self.assertEqual(ctx.exception.verdict, VerificationAttempt.VERDICT_ERROR)

    def test_audit_failure_is_reported_not_raised(self):
        with patch.object(VerificationAttempt.objects, "create", side_effect=OperationalError("disk I/O error")):
            result = self.ledger.record_attempt(
                order_id="order_1",
                payment_id="pay_1",
                verdict=VerificationAttempt.VERDICT_INVALID,
            )
        self.assertIsNone(result)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn("Audit log write failed", mail.outbox[0].subject)


@override_settings(RAZORPAY_KEY_SECRET=SECRET)
class PaymentVerifierTests(TestCase):
    def setUp(self):
        self.state = VerificationState()
        self.status_client = Mock()
        self.status_client.fetch_status.return_value = gateway_payment()
        self.verifier = PaymentVerifier(state=self.state, status_client=self.status_client)

    def verify(self, order_id="order_1", payment_id="pay_1", signature=None):
        signature = sign(order_id, payment_id) if signature is None else signature
        return self.verifier.verify(order_id, payment_id, signature)

    def test_valid_payment_commits_once(self):
        verdict = self.verify()
        self.assertTrue(verdict.valid)
        self.assertEqual(verdict.payment["status"], "captured")
        self.assertEqual(
            Transaction.objects.filter(payment_id="pay_1", status=Transaction.STATUS_SUCCESS).count(), 1
        )
        txn = Transaction.objects.get(payment_id="pay_1")
        self.assertEqual(txn.amount, 49900)
        self.assertEqual(txn.method, "upi")

        attempt = VerificationAttempt.objects.get()
        self.assertEqual(attempt.verdict, VerificationAttempt.VERDICT_VALID)
        self.assertTrue(attempt.signature_matched)
        self.assertEqual(attempt.computed_signature, sign("order_1", "pay_1"))
        self.assertEqual(attempt.status_from_gateway, VerificationAttempt.GATEWAY_CAPTURED)
        self.assertFalse(self.state.gate.is_held("pay_1"))

    def test_signature_mismatch_is_rejected_without_gateway_call(self):
        verdict = self.verify(signature="0" * 64)
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_INVALID)
        self.assertEqual(verdict.reason, "SIGNATURE_MISMATCH")
        self.status_client.fetch_status.assert_not_called()
        attempt = VerificationAttempt.objects.get()
        self.assertFalse(attempt.signature_matched)
        self.assertEqual(attempt.received_signature, "0" * 64)
        self.assertTrue(Transaction.objects.filter(status=Transaction.STATUS_FAILED).exists())
        self.assertFalse(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).exists())

    def test_not_captured_is_rejected(self):
        self.status_client.fetch_status.return_value = gateway_payment(status="authorized")
        verdict = self.verify()
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_INVALID)
        self.assertEqual(verdict.reason, "NOT_CAPTURED")
        self.assertFalse(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).exists())
        attempt = VerificationAttempt.objects.get()
        self.assertEqual(attempt.status_from_gateway, VerificationAttempt.GATEWAY_OTHER)
        self.assertEqual(attempt.gateway_response["status"], "authorized")

    def test_upstream_failure_errors_and_retry_succeeds(self):
        self.status_client.fetch_status.side_effect = UpstreamUnavailable("timeout")
        verdict = self.verify()
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_ERROR)
        self.assertTrue(verdict.retryable)
        self.assertFalse(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).exists())

        self.status_client.fetch_status.side_effect = None
        self.status_client.fetch_status.return_value = gateway_payment()
        self.assertTrue(self.verify().valid)

    def test_already_processed_is_duplicate(self):
        self.assertTrue(self.verify().valid)
        verdict = self.verify()
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_DUPLICATE)
        self.assertEqual(verdict.reason, "ALREADY_PROCESSED")
        self.assertEqual(self.status_client.fetch_status.call_count, 1)
        self.assertEqual(VerificationAttempt.objects.count(), 2)
        self.assertFalse(Transaction.objects.filter(status=Transaction.STATUS_FAILED).exists())

    def test_in_flight_duplicate_leaves_gate_to_holder(self):
        self.assertTrue(self.state.gate.acquire("pay_1"))
        verdict = self.verify()
        self.assertEqual(verdict.reason, "DUPLICATE_IN_FLIGHT")
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_DUPLICATE)
        self.assertTrue(self.state.gate.is_held("pay_1"))
        self.status_client.fetch_status.assert_not_called()

    def test_commit_conflict_demotes_to_duplicate(self):
        TransactionLedger().commit("order_1", "pay_1", amount=49900)
        with patch.object(TransactionLedger, "already_processed", return_value=False):
            verdict = self.verify()
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_DUPLICATE)
        self.assertEqual(verdict.reason, "LEDGER_COMMIT_CONFLICT")
        self.assertEqual(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).count(), 1)

    def test_ledger_write_failure_is_never_success(self):
        with patch.object(TransactionLedger, "commit", side_effect=LedgerWriteFailure("disk full")), patch(
            "payments.verification.send_ledger_failure_alert"
        ) as alert:
            verdict = self.verify()
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_ERROR)
        self.assertEqual(verdict.reason, "LEDGER_WRITE_FAILURE")
        alert.assert_called_once()
        self.assertFalse(self.state.gate.is_held("pay_1"))

    def test_audit_sink_failure_does_not_change_verdict(self):
        with patch.object(VerificationAttempt.objects, "create", side_effect=OperationalError("locked")):
            verdict = self.verify()
        self.assertTrue(verdict.valid)
        self.assertEqual(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).count(), 1)
        self.assertEqual(len(mail.outbox), 1)

    def test_unexpected_error_is_audited_and_raised(self):
        self.status_client.fetch_status.side_effect = RuntimeError("bug")
        with self.assertRaises(RuntimeError):
            self.verify()
        self.assertFalse(self.state.gate.is_held("pay_1"))
        self.assertEqual(VerificationAttempt.objects.get().reason, "UNEXPECTED_ERROR")
        failed = Transaction.objects.get(status=Transaction.STATUS_FAILED)
        self.assertEqual(failed.reason, "UNEXPECTED_ERROR")
        self.assertEqual(failed.payment_id, "pay_1")

    def test_non_string_signature_is_audited_as_invalid(self):
        verdict = self.verify(signature=12345)
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_INVALID)
        self.assertEqual(verdict.reason, "SIGNATURE_MISMATCH")
        attempt = VerificationAttempt.objects.get()
        self.assertEqual(attempt.received_signature, "12345")
        self.assertFalse(self.state.gate.is_held("pay_1"))

    def test_unexpected_error_with_non_string_fields_is_still_audited(self):
        self.status_client.fetch_status.side_effect = RuntimeError("bug")
        with patch("payments.verification.verify_payment_signature", return_value=True):
            with self.assertRaises(RuntimeError):
                self.verifier.verify(101, 202, 12345)
        attempt = VerificationAttempt.objects.get()
        self.assertEqual(attempt.reason, "UNEXPECTED_ERROR")
        self.assertEqual(attempt.payment_id, "202")
        self.assertEqual(attempt.received_signature, "12345")
        self.assertFalse(self.state.gate.is_held("202"))

    def test_amount_rejected_by_ledger_is_error_not_duplicate(self):
        self.status_client.fetch_status.return_value = gateway_payment(amount=-1)
        with patch("payments.verification.send_ledger_failure_alert") as alert:
            verdict = self.verify()
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_ERROR)
        self.assertEqual(verdict.reason, "LEDGER_WRITE_FAILURE")
        alert.assert_called_once()
        self.assertFalse(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).exists())
        self.assertFalse(self.state.gate.is_held("pay_1"))

    def test_ledger_read_failure_is_retryable_error(self):
        with patch.object(Transaction.objects, "filter", side_effect=OperationalError("db down")):
            verdict = self.verify()
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_ERROR)
        self.assertEqual(verdict.reason, "LEDGER_READ_FAILURE")
        self.assertTrue(verdict.retryable)
        self.status_client.fetch_status.assert_not_called()
        self.assertEqual(VerificationAttempt.objects.get().reason, "LEDGER_READ_FAILURE")
        self.assertFalse(self.state.gate.is_held("pay_1"))
        self.assertTrue(self.verify().valid)

    @override_settings(RAZORPAY_KEY_SECRET="")
    def test_missing_secret_is_an_error(self):
        verdict = self.verify()
        self.assertEqual(verdict.verdict, VerificationAttempt.VERDICT_ERROR)
        self.assertEqual(verdict.reason, "NOT_CONFIGURED")

    def test_callback_mints_token_for_redirect(self):
        payload = CallbackPayload("order_1", "pay_1", sign("order_1", "pay_1"))
        result = handle_callback(payload, verifier=self.verifier)
        self.assertTrue(result.verdict.valid)
        self.assertIn(result.verdict.token, result.redirect_target)
        self.assertTrue(result.redirect_target.startswith(reverse("payments:payment-success")))
        receipt = self.state.tokens.redeem(result.verdict.token)
        self.assertEqual(receipt.amount, 49900)

    def test_callback_missing_fields(self):
        result = handle_callback(CallbackPayload(order_id="order_1"), verifier=self.verifier)
        self.assertEqual(result.verdict.verdict, VerificationAttempt.VERDICT_INVALID)
        self.assertIsNone(result.redirect_target)
        failed = Transaction.objects.get(status=Transaction.STATUS_FAILED)
        self.assertEqual(failed.payment_id, "NA")
        self.assertEqual(failed.reason, "MISSING_CALLBACK_PARAMETERS")


class SlowStatusClient:
    def __init__(self, delay=0.02):
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def fetch_status(self, payment_id):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        return gateway_payment(payment_id=payment_id)


class ConcurrentCallbackTests(SimpleTestCase):
    def run_callbacks(self, n, shared_state=True):
        ledger = InMemoryLedger()
        status_client = SlowStatusClient()
        state = VerificationState()
        payload = CallbackPayload("order_1", "pay_1", sign("order_1", "pay_1"))
        barrier = threading.Barrier(n)
        results = []
        results_lock = threading.Lock()

        def deliver():
            verifier = PaymentVerifier(
                state=state if shared_state else VerificationState(),
                ledger=ledger,
                status_client=status_client,
                secret=SECRET,
            )
            barrier.wait()
            result = handle_callback(payload, verifier=verifier)
            with results_lock:
                results.append(result.verdict)

        threads = [threading.Thread(target=deliver) for _ in range(n)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(results), n)
        return ledger, status_client, results

    def assert_exactly_once(self, ledger, results):
        self.assertEqual(len(ledger.successes), 1)
        self.assertEqual(sum(1 for v in results if v.valid), 1)
        self.assertTrue(all(v.valid or v.duplicate for v in results))
        self.assertEqual(len(ledger.attempts), len(results))

    def test_concurrent_identical_callbacks(self):
        for n in (2, 10, 100):
            with self.subTest(n=n):
                ledger, status_client, results = self.run_callbacks(n)
                self.assert_exactly_once(ledger, results)
                self.assertEqual(status_client.calls, 1)

    def test_ledger_arbitrates_without_shared_gate(self):
        # Each delivery gets its own state, as if handled by different processes.
        for n in (2, 10):
            with self.subTest(n=n):
                ledger, _, results = self.run_callbacks(n, shared_state=False)
                self.assert_exactly_once(ledger, results)


class DatabaseConcurrentCallbackTests(TransactionTestCase):
    """Same deliveries against the real ledger, each with its own process state."""

    def deliver_concurrently(self, payload, n):
        ledger = TransactionLedger()
        status_client = SlowStatusClient()
        barrier = threading.Barrier(n)
        results = []
        results_lock = threading.Lock()

        def deliver():
            verifier = PaymentVerifier(
                state=VerificationState(),
                ledger=ledger,
                status_client=status_client,
                secret=SECRET,
            )
            try:
                barrier.wait()
                result = handle_callback(payload, verifier=verifier)
                with results_lock:
                    results.append(result.verdict)
            finally:
                connection.close()

        threads = [threading.Thread(target=deliver) for _ in range(n)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(results), n)
        return ledger, status_client, results

    def test_one_success_row_per_payment(self):
        for n in (2, 10, 100):
            with self.subTest(n=n):
                payment_id = f"pay_db_{n}"
                payload = CallbackPayload("order_1", payment_id, sign("order_1", payment_id))
                ledger, status_client, results = self.deliver_concurrently(payload, n)

                # Lock contention surfaces as retryable errors; redeliver those one at a time.
                final = [v for v in results if not v.retryable]
                valid_count = sum(1 for v in results if v.valid)
                pending = n - len(final)
                for _ in range(pending):
                    verifier = PaymentVerifier(
                        state=VerificationState(),
                        ledger=ledger,
                        status_client=status_client,
                        secret=SECRET,
                    )
                    verdict = handle_callback(payload, verifier=verifier).verdict
                    valid_count += verdict.valid
                    final.append(verdict)

                self.assertEqual(
                    Transaction.objects.filter(payment_id=payment_id, status=Transaction.STATUS_SUCCESS).count(), 1
                )
                self.assertEqual(valid_count, 1)
                self.assertEqual(len(final), n)
                self.assertTrue(all(v.valid or v.duplicate for v in final))


@override_settings(RAZORPAY_KEY_ID="rzp_test_key", RAZORPAY_KEY_SECRET=SECRET)
class PaymentViewTests(TestCase):
    def setUp(self):
        self.client = Client()
        apps.get_app_config("payments").state.reset()
        patcher = patch.object(StatusInquiryClient, "fetch_status", return_value=gateway_payment())
        self.fetch_status = patcher.start()
        self.addCleanup(patcher.stop)

    def callback_fields(self, order_id="order_1", payment_id="pay_1"):
        return {
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": sign(order_id, payment_id),
        }

    def test_verify_payment_valid(self):
        response = self.client.post(
            reverse("payments:verify-payment"),
            data={"order_id": "order_1", "payment_id": "pay_1", "signature": sign("order_1", "pay_1")},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["valid"])
        self.assertEqual(data["payment"]["id"], "pay_1")

    def test_verify_payment_signature_mismatch(self):
        response = self.client.post(
            reverse("payments:verify-payment"),
            data={"order_id": "order_1", "payment_id": "pay_1", "signature": "bad"},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {
            "valid": False,
            "verdict": "invalid",
            "order_id": "order_1",
            "payment_id": "pay_1",
            "reason": "SIGNATURE_MISMATCH",
            "message": "Signature mismatch",
        })

    def test_verify_payment_duplicate(self):
        body = {"order_id": "order_1", "payment_id": "pay_1", "signature": sign("order_1", "pay_1")}
        url = reverse("payments:verify-payment")
        self.client.post(url, data=body, content_type="application/json")
        response = self.client.post(url, data=body, content_type="application/json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["verdict"], "duplicate")

    def test_verify_payment_upstream_down(self):
        self.fetch_status.side_effect = UpstreamUnavailable("timeout")
        response = self.client.post(
            reverse("payments:verify-payment"),
            data={"order_id": "order_1", "payment_id": "pay_1", "signature": sign("order_1", "pay_1")},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["verdict"], "error")

    def test_verify_payment_requires_fields(self):
        response = self.client.post(
            reverse("payments:verify-payment"), data={"order_id": "order_1"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertFalse(VerificationAttempt.objects.exists())

    def test_verify_payment_rejects_non_string_fields(self):
        response = self.client.post(
            reverse("payments:verify-payment"),
            data={"order_id": "order_1", "payment_id": "pay_1", "signature": 12345},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertFalse(VerificationAttempt.objects.exists())
        self.fetch_status.assert_not_called()

    def test_verify_payment_ledger_unreadable(self):
        with patch("payments.ledger.TransactionLedger.already_processed", side_effect=LedgerReadFailure("db down")):
            response = self.client.post(
                reverse("payments:verify-payment"),
                data={"order_id": "order_1", "payment_id": "pay_1", "signature": sign("order_1", "pay_1")},
                content_type="application/json",
            )
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["reason"], "LEDGER_READ_FAILURE")
        self.assertEqual(VerificationAttempt.objects.get().verdict, VerificationAttempt.VERDICT_ERROR)

    def test_verify_payment_invalid_json(self):
        response = self.client.post(
            reverse("payments:verify-payment"), data="{not json", content_type="application/json"
        )
        self.assertEqual(response.status_code, 400)

    def test_callback_form_post_redirects_to_one_time_success_page(self):
        response = self.client.post(reverse("payments:payment-callback"), data=self.callback_fields())
        self.assertEqual(response.status_code, 302)
        success_url = response["Location"]
        self.assertNotIn("pay_1", success_url)

        page = self.client.get(success_url)
        self.assertEqual(page.status_code, 200)
        self.assertContains(page, "Payment Successful")
        self.assertContains(page, "pay_1")
        self.assertContains(page, "₹499.00")

        again = self.client.get(success_url)
        self.assertEqual(again.status_code, 404)

    def test_callback_query_params(self):
        response = self.client.get(reverse("payments:payment-callback"), data=self.callback_fields())
        self.assertEqual(response.status_code, 302)
        self.assertTrue(Transaction.objects.filter(payment_id="pay_1", status=Transaction.STATUS_SUCCESS).exists())

    def test_callback_body_and_query_are_merged(self):
        fields = self.callback_fields()
        url = f"{reverse('payments:payment-callback')}?razorpay_signature={fields.pop('razorpay_signature')}"
        response = self.client.post(url, data=fields)
        self.assertEqual(response.status_code, 302)

    def test_callback_missing_parameters(self):
        response = self.client.post(reverse("payments:payment-callback"), data={"razorpay_order_id": "order_1"})
        self.assertEqual(response.status_code, 400)
        self.assertContains(response, "Missing payment details", status_code=400)
        self.assertTrue(Transaction.objects.filter(status=Transaction.STATUS_FAILED, payment_id="NA").exists())
        self.assertEqual(VerificationAttempt.objects.get().source, VerificationAttempt.SOURCE_CALLBACK)

    def test_callback_verification_failed(self):
        fields = self.callback_fields()
        fields["razorpay_signature"] = "tampered"
        response = self.client.post(reverse("payments:payment-callback"), data=fields)
        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Verification failed.")

    def test_callback_repeated_delivery(self):
        url = reverse("payments:payment-callback")
        self.client.post(url, data=self.callback_fields())
        response = self.client.post(url, data=self.callback_fields())
        self.assertEqual(response.status_code, 409)
        self.assertContains(response, "Payment Already Processed", status_code=409)
        self.assertEqual(Transaction.objects.filter(status=Transaction.STATUS_SUCCESS).count(), 1)

    def test_callback_upstream_error(self):
        self.fetch_status.side_effect = UpstreamUnavailable("timeout")
        response = self.client.post(reverse("payments:payment-callback"), data=self.callback_fields())
        self.assertEqual(response.status_code, 502)
        self.assertContains(response, "Payment Error", status_code=502)

    def test_success_token_api_is_single_use(self):
        response = self.client.post(reverse("payments:payment-callback"), data=self.callback_fields())
        token = response["Location"].split("token=", 1)[1]
        url = reverse("payments:success-token", args=[token])

        first = self.client.get(url)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json(), {
            "status": "SUCCESS",
            "order_id": "order_1",
            "payment_id": "pay_1",
            "amount": 49900,
        })
        self.assertEqual(self.client.get(url).status_code, 404)

    def test_success_page_without_token(self):
        response = self.client.get(reverse("payments:payment-success"))
        self.assertEqual(response.status_code, 404)
        self.assertContains(response, "Link Expired", status_code=404)


class CreateOrderTests(TestCase):
    def test_catalog_price(self):
        self.assertEqual(get_course_price("python-foundations"), 499)
        with self.assertRaises(UnknownCourse):
            get_course_price("astrology-101")

    def test_invalid_course(self):
        response = self.client.post(
            reverse("payments:create-order"), data={"course": "astrology-101"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid course selected"})

    @override_settings(RAZORPAY_KEY_ID="rzp_test_key", RAZORPAY_KEY_SECRET=SECRET)
    @patch("payments.services.get_razorpay_client")
    def test_create_order(self, mock_get_client):
        mock_get_client.return_value.order.create.return_value = {
            "id": "order_mock_123",
            "amount": 49900,
            "currency": "INR",
        }
        response = self.client.post(
            reverse("payments:create-order"), data={"course": "python-foundations"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {
            "order_id": "order_mock_123",
            "amount": 49900,
            "currency": "INR",
            "course": "python-foundations",
            "key": "rzp_test_key",
        })
        order_data = mock_get_client.return_value.order.create.call_args.args[0]
        self.assertEqual(order_data["amount"], 49900)
        self.assertEqual(order_data["payment_capture"], 1)
        self.assertTrue(order_data["receipt"].startswith("receipt_"))

    @override_settings(RAZORPAY_KEY_ID="", RAZORPAY_KEY_SECRET="")
    def test_create_order_without_keys_returns_local_order(self):
        response = self.client.post(reverse("payments:create-order"), data={"course": "python-foundations"})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["order_id"].startswith("order_local_"))

    @override_settings(RAZORPAY_KEY_ID="rzp_test_key", RAZORPAY_KEY_SECRET=SECRET)
    @patch("payments.services.get_razorpay_client")
    def test_create_order_gateway_error(self, mock_get_client):
        mock_get_client.return_value.order.create.side_effect = razorpay.errors.BadRequestError("bad amount")
        response = self.client.post(
            reverse("payments:create-order"), data={"course": "python-foundations"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 502)
