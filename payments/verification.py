"""
Payment verification.

Both the direct verify endpoint and the gateway callback go through
``PaymentVerifier.verify``:

1. take the per-payment gate (busy -> duplicate, gate left to its holder)
2. refuse payments the ledger already credited (duplicate)
3. check the ``order_id|payment_id`` HMAC (mismatch -> invalid)
4. ask the gateway for the payment status (unreachable -> error,
   anything but captured -> invalid)
5. commit the SUCCESS transaction (conflict -> duplicate, write failure -> error)

Every attempt leaves one audit row, and the gate is released on every path
that acquired it.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from django.apps import apps
from django.urls import reverse

from .exceptions import (
    AlreadyProcessed,
    DuplicateInFlight,
    InvalidCallbackPayload,
    LedgerWriteFailure,
    NotCaptured,
    SignatureMismatch,
    VerificationFailure,
)
from .ledger import TransactionLedger
from .models import VerificationAttempt
from .notifications import send_ledger_failure_alert
from .services import (
    StatusInquiryClient,
    compute_payment_signature,
    get_razorpay_keys,
    verify_payment_signature,
)
from .state import SuccessReceipt, VerificationState

logger = logging.getLogger(__name__)

CALLBACK_FIELDS = ("razorpay_order_id", "razorpay_payment_id", "razorpay_signature")


@dataclass
class Verdict:
    verdict: str
    order_id: str
    payment_id: str
    reason: str = ""
    message: str = ""
    payment: Dict[str, Any] = field(default_factory=dict)
    transaction_id: Optional[int] = None
    token: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.verdict == VerificationAttempt.VERDICT_VALID

    @property
    def duplicate(self) -> bool:
        return self.verdict == VerificationAttempt.VERDICT_DUPLICATE

    @property
    def retryable(self) -> bool:
        return self.verdict == VerificationAttempt.VERDICT_ERROR

    def as_dict(self) -> Dict[str, Any]:
        data = {
            "valid": self.valid,
            "verdict": self.verdict,
            "order_id": self.order_id,
            "payment_id": self.payment_id,
        }
        if self.valid:
            data["payment"] = self.payment
        else:
            data["reason"] = self.reason
            data["message"] = self.message
        return data


@dataclass
class CallbackPayload:
    order_id: str = ""
    payment_id: str = ""
    signature: str = ""

    @classmethod
    def from_sources(cls, *sources: Mapping[str, Any]) -> "CallbackPayload":
        """Take each field from the first source that has it (form body, then query)."""
        values = {}
        for name in CALLBACK_FIELDS:
            values[name] = next((src.get(name) for src in sources if src.get(name)), "")
        return cls(
            order_id=values["razorpay_order_id"],
            payment_id=values["razorpay_payment_id"],
            signature=values["razorpay_signature"],
        )

    @property
    def missing_fields(self) -> list[str]:
        return [
            name
            for name, value in zip(CALLBACK_FIELDS, (self.order_id, self.payment_id, self.signature))
            if not value
        ]


@dataclass
class CallbackResult:
    verdict: Verdict
    redirect_target: Optional[str] = None


def _text(value) -> str:
    return "" if value is None else str(value)


@dataclass
class _Attempt:
    order_id: str
    payment_id: str
    received_signature: str
    source: str
    computed_signature: str = ""
    signature_matched: bool = False
    status_from_gateway: Optional[str] = None
    gateway_response: Dict[str, Any] = field(default_factory=dict)


class PaymentVerifier:
    def __init__(
        self,
        state: VerificationState,
        ledger: Optional[TransactionLedger] = None,
        status_client: Optional[StatusInquiryClient] = None,
        secret: Optional[str] = None,
    ):
        self.state = state
        self.ledger = ledger or TransactionLedger()
        self.status_client = status_client or StatusInquiryClient()
        self._secret = secret

    @property
    def secret(self) -> str:
        if self._secret:
            return self._secret
        _, key_secret = get_razorpay_keys()
        return key_secret

    def verify(
        self,
        order_id: str,
        payment_id: str,
        signature: str,
        source: str = VerificationAttempt.SOURCE_DIRECT,
        mint_token: bool = False,
    ) -> Verdict:
        attempt = _Attempt(_text(order_id), _text(payment_id), _text(signature), source)
        payment_id = attempt.payment_id

        if not self.state.gate.acquire(payment_id):
            logger.warning("Verification for %s already in flight", payment_id)
            return self._resolve(attempt, DuplicateInFlight("Verification already in progress"))

        try:
            return self._run(attempt, mint_token)
        except VerificationFailure as failure:
            return self._resolve(attempt, failure)
        except Exception as e:
            self._audit(attempt, VerificationAttempt.VERDICT_ERROR, "UNEXPECTED_ERROR")
            self.ledger.record_failure(
                _text(attempt.order_id)[:191],
                _text(attempt.payment_id)[:191],
                reason="UNEXPECTED_ERROR",
                raw_response=attempt.gateway_response,
            )
            logger.error("Unexpected error verifying %s: %s", payment_id, e, exc_info=True)
            raise
        finally:
            self.state.gate.release(payment_id)

    def reject_payload(self, payload: CallbackPayload, source: str = VerificationAttempt.SOURCE_CALLBACK) -> Verdict:
        """Record a callback that arrived without the fields needed to verify it."""
        attempt = _Attempt(
            _text(payload.order_id) or "NA", _text(payload.payment_id) or "NA", _text(payload.signature), source
        )
        missing = ", ".join(payload.missing_fields)
        return self._resolve(attempt, InvalidCallbackPayload(f"Missing callback parameters: {missing}"))

    def _run(self, attempt: _Attempt, mint_token: bool) -> Verdict:
        order_id, payment_id = attempt.order_id, attempt.payment_id

        if self.ledger.already_processed(order_id, payment_id):
            raise AlreadyProcessed("Payment already verified")

        secret = self.secret
        if not secret:
            raise VerificationFailure("Razorpay key secret is not configured", code="NOT_CONFIGURED")

        attempt.computed_signature = compute_payment_signature(order_id, payment_id, secret)
        attempt.signature_matched = verify_payment_signature(
            order_id, payment_id, attempt.received_signature, secret
        )
        logger.info("Signature check for %s: matched=%s", payment_id, attempt.signature_matched)
        if not attempt.signature_matched:
            raise SignatureMismatch("Signature mismatch")

        status = self.status_client.fetch_status(payment_id)
        attempt.gateway_response = status.raw
        attempt.status_from_gateway = (
            VerificationAttempt.GATEWAY_CAPTURED if status.captured else VerificationAttempt.GATEWAY_OTHER
        )
        logger.info("Gateway reports payment %s as %s", payment_id, status.status)
        if not status.captured:
            raise NotCaptured(f"Payment not captured (status: {status.status})")

        try:
            txn = self.ledger.commit(
                order_id,
                payment_id,
                amount=status.amount,
                method=status.method,
                raw_response=status.raw,
            )
        except LedgerWriteFailure as e:
            send_ledger_failure_alert(order_id, payment_id, status.amount, e)
            raise

        token = self.state.tokens.mint(order_id, payment_id, status.amount) if mint_token else None
        self._audit(attempt, VerificationAttempt.VERDICT_VALID)
        logger.info("Payment %s for order %s verified", payment_id, order_id)
        return Verdict(
            verdict=VerificationAttempt.VERDICT_VALID,
            order_id=order_id,
            payment_id=payment_id,
            payment=status.raw,
            transaction_id=txn.pk,
            token=token,
        )

    def _resolve(self, attempt: _Attempt, failure: VerificationFailure) -> Verdict:
        self._audit(attempt, failure.verdict, failure.code)
        if failure.verdict != VerificationAttempt.VERDICT_DUPLICATE:
            self.ledger.record_failure(
                _text(attempt.order_id)[:191],
                _text(attempt.payment_id)[:191],
                reason=failure.code,
                raw_response=attempt.gateway_response,
            )
        logger.info(
            "Verification for %s ended %s (%s): %s",
            attempt.payment_id,
            failure.verdict,
            failure.code,
            failure.message,
        )
        return Verdict(
            verdict=failure.verdict,
            order_id=_text(attempt.order_id)[:191],
            payment_id=_text(attempt.payment_id)[:191],
            reason=failure.code,
            message=failure.message,
        )

    def _audit(self, attempt: _Attempt, verdict: str, reason: str = "") -> None:
        self.ledger.record_attempt(
            order_id=_text(attempt.order_id)[:191],
            payment_id=_text(attempt.payment_id)[:191],
            source=attempt.source,
            received_signature=_text(attempt.received_signature)[:191],
            computed_signature=attempt.computed_signature,
            signature_matched=attempt.signature_matched,
            status_from_gateway=attempt.status_from_gateway,
            verdict=verdict,
            reason=reason,
            gateway_response=attempt.gateway_response,
        )


def get_verifier() -> PaymentVerifier:
    return PaymentVerifier(state=apps.get_app_config("payments").state)


def create_verification(order_id: str, payment_id: str, signature: str) -> Verdict:
    return get_verifier().verify(order_id, payment_id, signature)


def handle_callback(payload: CallbackPayload, verifier: Optional[PaymentVerifier] = None) -> CallbackResult:
    verifier = verifier or get_verifier()
    if payload.missing_fields:
        return CallbackResult(verifier.reject_payload(payload))

    verdict = verifier.verify(
        payload.order_id,
        payload.payment_id,
        payload.signature,
        source=VerificationAttempt.SOURCE_CALLBACK,
        mint_token=True,
    )
    redirect_target = None
    if verdict.valid and verdict.token:
        redirect_target = f"{reverse('payments:payment-success')}?{urlencode({'token': verdict.token})}"
    return CallbackResult(verdict, redirect_target)


def redeem_success_token(token: str, state: Optional[VerificationState] = None) -> SuccessReceipt:
    """Single-use lookup of a success token. Raises TokenNotFound."""
    state = state or apps.get_app_config("payments").state
    return state.tokens.redeem(token)
