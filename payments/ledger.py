import logging
from typing import Any, Dict, Optional

from django.db import DatabaseError, IntegrityError
from django.db import transaction as db_transaction

from .exceptions import AuditLogFailure, LedgerCommitConflict, LedgerReadFailure, LedgerWriteFailure
from .models import Transaction, VerificationAttempt
from .notifications import send_audit_failure_alert

logger = logging.getLogger(__name__)


class TransactionLedger:
    """
    Durable record of credited payments plus the append-only audit trail.

    ``commit`` is the only write that can change a verdict. Audit writes
    (``record_attempt`` and ``record_failure``) are best-effort: a failing
    audit sink is logged and reported to operators but never raised.
    """

    def already_processed(self, order_id: str, payment_id: str) -> bool:
        try:
            return Transaction.objects.filter(
                order_id=order_id,
                payment_id=payment_id,
                status=Transaction.STATUS_SUCCESS,
            ).exists()
        except DatabaseError as e:
            logger.error("Duplicate check failed for %s: %s", payment_id, e, exc_info=True)
            raise LedgerReadFailure(str(e)) from e

    def has_success(self, payment_id: str) -> bool:
        return Transaction.objects.filter(
            payment_id=payment_id,
            status=Transaction.STATUS_SUCCESS,
        ).exists()

    def commit(
        self,
        order_id: str,
        payment_id: str,
        amount: Optional[int],
        method: str = "",
        raw_response: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        try:
            with db_transaction.atomic():
                txn = Transaction.objects.create(
                    order_id=order_id,
                    payment_id=payment_id,
                    status=Transaction.STATUS_SUCCESS,
                    amount=amount,
                    method=method or "",
                    raw_response=raw_response or {},
                )
        except IntegrityError as e:
            # Only a SUCCESS row that already exists means another attempt won.
            try:
                conflict = self.has_success(payment_id)
            except DatabaseError:
                conflict = False
            if conflict:
                logger.info("SUCCESS transaction for %s already committed", payment_id)
                raise LedgerCommitConflict(str(e)) from e
            logger.error("Integrity error committing %s: %s", payment_id, e, exc_info=True)
            raise LedgerWriteFailure(str(e)) from e
        except DatabaseError as e:
            logger.error("Failed to commit SUCCESS transaction for %s: %s", payment_id, e, exc_info=True)
            raise LedgerWriteFailure(str(e)) from e

        logger.info("Committed SUCCESS transaction %s for order %s", txn.pk, order_id)
        return txn

    def record_attempt(self, **fields) -> Optional[VerificationAttempt]:
        try:
            return self._append(VerificationAttempt, fields)
        except AuditLogFailure as e:
            self._report_audit_failure({"kind": "attempt", **fields}, e)
            return None

    def record_failure(
        self,
        order_id: str,
        payment_id: str,
        reason: str,
        raw_response: Optional[Dict[str, Any]] = None,
        amount: Optional[int] = None,
    ) -> Optional[Transaction]:
        fields = {
            "order_id": order_id or "NA",
            "payment_id": payment_id or "NA",
            "status": Transaction.STATUS_FAILED,
            "reason": reason,
            "amount": amount,
            "raw_response": raw_response or {},
        }
        try:
            return self._append(Transaction, fields)
        except AuditLogFailure as e:
            self._report_audit_failure({"kind": "failed_transaction", **fields}, e)
            return None

    def _append(self, model, fields):
        try:
            with db_transaction.atomic():
                return model.objects.create(**fields)
        except DatabaseError as e:
            raise AuditLogFailure(str(e)) from e

    def _report_audit_failure(self, row: dict, error: Exception) -> None:
        logger.error(
            "Audit sink unavailable, dropped %s row for payment %s: %s",
            row.get("kind"),
            row.get("payment_id"),
            error,
            exc_info=True,
        )
        send_audit_failure_alert(row, error)
