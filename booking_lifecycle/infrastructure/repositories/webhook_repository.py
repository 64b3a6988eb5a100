# booking_lifecycle/infrastructure/repositories/webhook_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from booking_lifecycle.infrastructure.db.models import PaymentWebhookEvent


class PaymentWebhookRepository:
    """Ledger of processor deliveries already handled."""

    def __init__(self, db: Session):
        self.db = db

    def find(self, provider: str, delivery_id: str) -> PaymentWebhookEvent | None:
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.provider == provider)
            .where(PaymentWebhookEvent.delivery_id == delivery_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def record(
        self,
        provider: str,
        delivery_id: str,
        event_type: str,
        payload_hash: str,
        payment_reference: str | None = None,
        booking_id: str | None = None,
    ) -> PaymentWebhookEvent:
        event = PaymentWebhookEvent(
            provider=provider,
            delivery_id=delivery_id,
            event_type=event_type,
            payment_reference=payment_reference,
            booking_id=booking_id,
            payload_hash=payload_hash,
        )
        self.db.add(event)
        self.db.flush()
        return event
