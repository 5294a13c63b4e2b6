"""
Error kinds raised inside the payment verification flow.

Every ``VerificationFailure`` carries the verdict it resolves to, so the
verifier can turn any of them into a response without a lookup table.
"""
from .models import VerificationAttempt


class PaymentsError(Exception):
    """Base class for errors raised by the payments app."""


class VerificationFailure(PaymentsError):
    code = "VERIFICATION_FAILED"
    verdict = VerificationAttempt.VERDICT_ERROR

    def __init__(self, message: str = "", code: str = None):
        self.message = message or self.__class__.__name__
        if code:
            self.code = code
        super().__init__(self.message)


class SignatureMismatch(VerificationFailure):
    code = "SIGNATURE_MISMATCH"
    verdict = VerificationAttempt.VERDICT_INVALID


class NotCaptured(VerificationFailure):
    code = "NOT_CAPTURED"
    verdict = VerificationAttempt.VERDICT_INVALID


class UpstreamUnavailable(VerificationFailure):
    """The gateway could not be reached; nothing was committed, retry is safe."""

    code = "UPSTREAM_UNAVAILABLE"
    verdict = VerificationAttempt.VERDICT_ERROR


class UpstreamError(VerificationFailure):
    """The gateway answered with an error for this payment."""

    code = "UPSTREAM_ERROR"
    verdict = VerificationAttempt.VERDICT_ERROR


class DuplicateInFlight(VerificationFailure):
    code = "DUPLICATE_IN_FLIGHT"
    verdict = VerificationAttempt.VERDICT_DUPLICATE


class AlreadyProcessed(VerificationFailure):
    code = "ALREADY_PROCESSED"
    verdict = VerificationAttempt.VERDICT_DUPLICATE


class LedgerCommitConflict(VerificationFailure):
    code = "LEDGER_COMMIT_CONFLICT"
    verdict = VerificationAttempt.VERDICT_DUPLICATE


class LedgerReadFailure(VerificationFailure):
    """The duplicate check could not reach the ledger; nothing was committed, retry is safe."""

    code = "LEDGER_READ_FAILURE"
    verdict = VerificationAttempt.VERDICT_ERROR


class LedgerWriteFailure(VerificationFailure):
    code = "LEDGER_WRITE_FAILURE"
    verdict = VerificationAttempt.VERDICT_ERROR


class InvalidCallbackPayload(VerificationFailure):
    code = "MISSING_CALLBACK_PARAMETERS"
    verdict = VerificationAttempt.VERDICT_INVALID


class AuditLogFailure(PaymentsError):
    """The audit sink rejected a row. Reported to operators, never to callers."""


class TokenNotFound(PaymentsError):
    pass


class UnknownCourse(PaymentsError):
    pass
