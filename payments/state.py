"""
Process-local verification state.

``VerificationState`` is built once when the app registry is ready and handed
to every ``PaymentVerifier``. Nothing here survives a restart: the database
ledger decides whether a payment was credited, the lock set only saves
duplicate gateway calls, and success tokens are short-lived conveniences.
"""
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from django.utils import timezone

from .exceptions import TokenNotFound

DEFAULT_TOKEN_TTL = 300


class ConcurrencyGate:
    """Non-blocking per-payment lock set."""

    def __init__(self):
        self._lock = threading.Lock()
        self._held = set()

    def acquire(self, payment_id: str) -> bool:
        with self._lock:
            if payment_id in self._held:
                return False
            self._held.add(payment_id)
            return True

    def release(self, payment_id: str) -> None:
        with self._lock:
            self._held.discard(payment_id)

    def is_held(self, payment_id: str) -> bool:
        with self._lock:
            return payment_id in self._held

    def clear(self) -> None:
        with self._lock:
            self._held.clear()


@dataclass(frozen=True)
class SuccessReceipt:
    order_id: str
    payment_id: str
    amount: Optional[int]
    expires_at: datetime

    def as_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "amount": self.amount,
        }


class SuccessTokenStore:
    """One-time tokens that stand in for payment details in redirect URLs."""

    def __init__(self, ttl: int = DEFAULT_TOKEN_TTL, clock: Callable[[], datetime] = timezone.now):
        self.ttl = timedelta(seconds=ttl)
        self.clock = clock
        self._lock = threading.Lock()
        self._tokens: dict[str, SuccessReceipt] = {}

    def mint(self, order_id: str, payment_id: str, amount: Optional[int]) -> str:
        token = secrets.token_urlsafe(32)
        receipt = SuccessReceipt(
            order_id=order_id,
            payment_id=payment_id,
            amount=amount,
            expires_at=self.clock() + self.ttl,
        )
        with self._lock:
            self._purge_expired()
            self._tokens[token] = receipt
        return token

    def redeem(self, token: str) -> SuccessReceipt:
        """Return and forget the receipt behind ``token``; raise TokenNotFound otherwise."""
        with self._lock:
            receipt = self._tokens.pop(token, None) if token else None
        if receipt is None or receipt.expires_at <= self.clock():
            raise TokenNotFound(token)
        return receipt

    def __len__(self):
        with self._lock:
            return len(self._tokens)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

    def _purge_expired(self) -> None:
        now = self.clock()
        expired = [token for token, receipt in self._tokens.items() if receipt.expires_at <= now]
        for token in expired:
            del self._tokens[token]


class VerificationState:
    """Container for the mutable state shared by verifiers in this process."""

    def __init__(self, token_ttl: int = DEFAULT_TOKEN_TTL, clock: Callable[[], datetime] = timezone.now):
        self.gate = ConcurrencyGate()
        self.tokens = SuccessTokenStore(ttl=token_ttl, clock=clock)

    def reset(self) -> None:
        self.gate.clear()
        self.tokens.clear()
