import logging

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


def _send_operator_alert(subject: str, message: str) -> None:
    if settings.DEBUG:  # Only send in production
        return
    try:
        send_mail(
            f"[CoursePay] {subject}",
            message,
            settings.DEFAULT_FROM_EMAIL,
            [settings.SUPPORT_EMAIL],
            fail_silently=True,
        )
        logger.info("Sent operator alert: %s", subject)
    except Exception as e:
        logger.error("Failed to send operator alert %r: %s", subject, e)


def send_audit_failure_alert(row: dict, error: Exception) -> None:
    """Alert when an audit row could not be written."""
    message = f"""
An audit row could not be written. The verification verdict was not affected.

Kind: {row.get('kind', 'unknown')}
Order ID: {row.get('order_id')}
Payment ID: {row.get('payment_id')}
Verdict/Status: {row.get('verdict') or row.get('status')}
Reason: {row.get('reason', '')}
Error: {error}
"""
    _send_operator_alert("Audit log write failed", message)


def send_ledger_failure_alert(order_id: str, payment_id: str, amount, error: Exception) -> None:
    """Alert when a captured payment could not be recorded as SUCCESS."""
    message = f"""
A captured payment could not be committed to the ledger and was reported as an error.
The payer may retry; check the gateway dashboard before reconciling by hand.

Order ID: {order_id}
Payment ID: {payment_id}
Amount: {amount}
Error: {error}

Admin: {getattr(settings, 'SITE_URL', 'http://localhost:8000')}/admin/payments/transaction/?q={payment_id}
"""
    _send_operator_alert("Ledger commit failed for captured payment", message)
