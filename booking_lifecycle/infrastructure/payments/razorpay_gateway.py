# booking_lifecycle/infrastructure/payments/razorpay_gateway.py

import hashlib
import json
import logging
import os
from decimal import Decimal
from functools import lru_cache

import razorpay
import requests

from booking_lifecycle.domain.exceptions import WebhookVerificationError
from booking_lifecycle.infrastructure.payments.gateway import (
    CheckoutSession,
    NotificationOutcome,
    PaymentNotification,
    PaymentProcessorError,
    SessionState,
    SessionStatus,
    TransientPaymentError,
    to_minor_units,
)

logger = logging.getLogger(__name__)

CHECKOUT_CALLBACK_URL = os.getenv("CHECKOUT_CALLBACK_URL")

_PAID_EVENTS = {"payment_link.paid"}
# A declined attempt (payment.failed) leaves the link open for another try.
_FAILED_EVENTS = {"payment_link.cancelled", "payment_link.expired"}
_LINK_STATES = {
    "paid": SessionState.PAID,
    "expired": SessionState.EXPIRED,
    "cancelled": SessionState.EXPIRED,
}
_TRANSIENT_ERRORS = (
    razorpay.errors.ServerError,
    razorpay.errors.GatewayError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


class RazorpayPaymentProcessor:
    """
    Hosted checkout on Razorpay payment links.

    A payment link is the checkout session: its id is the session id and
    the booking's idempotency key travels as the link's reference_id,
    which Razorpay keeps unique per account.
    """

    provider = "razorpay"

    def __init__(
        self,
        client: razorpay.Client,
        webhook_secret: str | None = None,
        callback_url: str | None = CHECKOUT_CALLBACK_URL,
    ):
        self.client = client
        self.webhook_secret = webhook_secret
        self.callback_url = callback_url

    @classmethod
    def from_env(cls) -> "RazorpayPaymentProcessor":
        key_id = os.getenv("RAZORPAY_KEY_ID")
        key_secret = os.getenv("RAZORPAY_KEY_SECRET")
        if not key_id or not key_secret:
            raise PaymentProcessorError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        return cls(
            client=razorpay.Client(auth=(key_id, key_secret)),
            webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET"),
        )

    def create_checkout_session(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        description: str,
        metadata: dict,
    ) -> CheckoutSession:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "reference_id": idempotency_key,
            "description": description,
            "notes": {key: str(value) for key, value in metadata.items()},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
            payload["callback_method"] = "get"

        link = self._call("payment_link.create", self.client.payment_link.create, payload)
        return CheckoutSession(session_id=link["id"], checkout_url=link["short_url"])

    def expire_checkout_session(self, session_id: str) -> None:
        self._call("payment_link.cancel", self.client.payment_link.cancel, session_id)

    def fetch_session_status(self, session_id: str) -> SessionStatus:
        link = self._call("payment_link.fetch", self.client.payment_link.fetch, session_id)
        state = _LINK_STATES.get(link.get("status"), SessionState.OPEN)

        payment_reference = None
        for payment in link.get("payments") or []:
            if payment.get("status") == "captured":
                payment_reference = payment.get("payment_id")
                break

        return SessionStatus(
            session_id=session_id,
            state=state,
            payment_reference=payment_reference,
        )

    def refund(
        self,
        payment_reference: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> str:
        refund = self._call(
            "payment.refund",
            self.client.payment.refund,
            payment_reference,
            {
                "amount": to_minor_units(amount),
                "receipt": idempotency_key,
                "notes": {"currency": currency},
            },
        )
        return refund["id"]

    def parse_webhook(
        self,
        body: bytes,
        signature: str | None,
        delivery_id: str | None,
    ) -> PaymentNotification:
        if not self.webhook_secret:
            raise WebhookVerificationError("Razorpay webhook secret not configured")
        if not signature:
            raise WebhookVerificationError("Missing webhook signature")

        text = body.decode("utf-8")
        try:
            self.client.utility.verify_webhook_signature(text, signature, self.webhook_secret)
        except razorpay.errors.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid webhook signature") from exc

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise WebhookVerificationError("Webhook body is not valid JSON") from exc

        payload_hash = hashlib.sha256(body).hexdigest()
        event_type = event.get("event", "")
        entities = event.get("payload") or {}
        link = (entities.get("payment_link") or {}).get("entity") or {}
        payment = (entities.get("payment") or {}).get("entity") or {}
        notes = link.get("notes") or payment.get("notes") or {}

        if event_type in _PAID_EVENTS:
            outcome = NotificationOutcome.PAID
        elif event_type in _FAILED_EVENTS:
            outcome = NotificationOutcome.FAILED
        else:
            outcome = NotificationOutcome.IGNORED

        return PaymentNotification(
            # Razorpay sends X-Razorpay-Event-Id; fall back to the body hash.
            delivery_id=delivery_id or payload_hash,
            event_type=event_type,
            outcome=outcome,
            payload_hash=payload_hash,
            session_id=link.get("id"),
            payment_reference=payment.get("id"),
            booking_id=notes.get("booking_id") if isinstance(notes, dict) else None,
            metadata=notes if isinstance(notes, dict) else {},
        )

    def _call(self, operation: str, fn, *args):
        try:
            return fn(*args)
        except _TRANSIENT_ERRORS as exc:
            logger.warning("Razorpay %s failed transiently: %s", operation, exc)
            raise TransientPaymentError(f"Razorpay {operation} failed: {exc}") from exc
        except (razorpay.errors.BadRequestError, requests.exceptions.RequestException) as exc:
            raise PaymentProcessorError(f"Razorpay {operation} rejected: {exc}") from exc


@lru_cache
def get_payment_processor() -> RazorpayPaymentProcessor:
    return RazorpayPaymentProcessor.from_env()
