# booking_lifecycle/infrastructure/payments/gateway.py

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Protocol


class PaymentProcessorError(Exception):
    """Raised when the payment processor rejects or fails a call."""


class TransientPaymentError(PaymentProcessorError):
    """Network failures and 5xx responses. Safe to retry with the same key."""


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    checkout_url: str


class SessionState(str, Enum):
    OPEN = "open"
    PAID = "paid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    state: SessionState
    payment_reference: str | None = None


class NotificationOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentNotification:
    """A verified webhook delivery, reduced to what the reconciler needs."""

    delivery_id: str
    event_type: str
    outcome: NotificationOutcome
    payload_hash: str
    session_id: str | None = None
    payment_reference: str | None = None
    booking_id: str | None = None
    metadata: dict = field(default_factory=dict)


class PaymentProcessor(Protocol):
    provider: str

    def create_checkout_session(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        description: str,
        metadata: dict,
    ) -> CheckoutSession:
        ...

    def expire_checkout_session(self, session_id: str) -> None:
        ...

    def fetch_session_status(self, session_id: str) -> SessionStatus:
        ...

    def refund(
        self,
        payment_reference: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> str:
        """Issue a refund and return the processor's refund reference."""
        ...

    def parse_webhook(
        self,
        body: bytes,
        signature: str | None,
        delivery_id: str | None,
    ) -> PaymentNotification:
        ...


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))
