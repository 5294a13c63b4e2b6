import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import razorpay
import requests
from django.conf import settings
from django.utils import timezone

from .catalog import get_course_price
from .exceptions import UpstreamError, UpstreamUnavailable

logger = logging.getLogger(__name__)

CAPTURED = "captured"


def get_razorpay_keys() -> tuple[str, str]:
    return settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET


def get_razorpay_client() -> Optional[razorpay.Client]:
    key_id, key_secret = get_razorpay_keys()
    if not (key_id and key_secret):
        return None
    return razorpay.Client(auth=(key_id, key_secret))


def compute_payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    return hmac.new(
        secret.encode(),
        f"{order_id}|{payment_id}".encode(),
        hashlib.sha256,
    ).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not (order_id and payment_id and signature and secret):
        return False
    generated = compute_payment_signature(order_id, payment_id, secret)
    return hmac.compare_digest(generated, signature)


@dataclass
class PaymentStatus:
    status: str
    amount: Optional[int] = None
    method: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def captured(self) -> bool:
        return self.status == CAPTURED


class StatusInquiryClient:
    """
    Asks the gateway what actually happened to a payment.

    A well-formed answer is returned whatever the status is; only failures to
    get an answer raise.
    """

    def __init__(self, client: Optional[razorpay.Client] = None):
        self._client = client

    @property
    def client(self) -> Optional[razorpay.Client]:
        return self._client or get_razorpay_client()

    def fetch_status(self, payment_id: str) -> PaymentStatus:
        client = self.client
        if client is None:
            raise UpstreamUnavailable("Razorpay keys are not configured")

        try:
            payment = client.payment.fetch(payment_id)
        except requests.exceptions.RequestException as e:
            logger.warning("Razorpay unreachable while fetching %s: %s", payment_id, e)
            raise UpstreamUnavailable(str(e)) from e
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError) as e:
            logger.warning("Razorpay server error while fetching %s: %s", payment_id, e)
            raise UpstreamUnavailable(str(e)) from e
        except razorpay.errors.BadRequestError as e:
            logger.warning("Razorpay rejected payment lookup for %s: %s", payment_id, e)
            raise UpstreamError(str(e), code="BAD_REQUEST_ERROR") from e

        if not isinstance(payment, dict) or "status" not in payment:
            raise UpstreamError("Malformed payment response", code="MALFORMED_RESPONSE")

        return PaymentStatus(
            status=payment["status"],
            amount=payment.get("amount"),
            method=payment.get("method") or "",
            raw=payment,
        )


def create_gateway_order(course: str) -> Dict[str, Any]:
    """Create a gateway order for a catalog course. Raises UnknownCourse."""
    price = get_course_price(course)
    amount = price * 100
    currency = settings.PAYMENT_CURRENCY
    key_id, _ = get_razorpay_keys()

    client = get_razorpay_client()
    if not client:
        # Fallback mock order for local demos when keys are missing
        mock_id = f"order_local_{timezone.now().timestamp()}"
        logger.warning("Razorpay keys missing, returning mock order id %s", mock_id)
        order = {"id": mock_id, "amount": amount, "currency": currency}
    else:
        order = client.order.create(
            {
                "amount": amount,
                "currency": currency,
                "receipt": f"receipt_{int(time.time() * 1000)}",
                "payment_capture": 1,
                "notes": {"course": course},
            }
        )
        logger.info("Created Razorpay order %s for course %s", order["id"], course)

    return {
        "order_id": order["id"],
        "amount": order["amount"],
        "currency": order["currency"],
        "course": course,
        "key": key_id,
    }
