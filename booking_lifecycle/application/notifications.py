import logging
from typing import Protocol

from sqlalchemy.orm import Session

from booking_lifecycle.infrastructure.db.models import Booking, Event
from booking_lifecycle.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)

BOOKING_AGGREGATE = "booking"


class Notifier(Protocol):
    def booking_confirmed(self, booking: Booking) -> None:
        ...

    def booking_cancelled(self, booking: Booking, refund_pending: bool) -> None:
        ...

    def event_reminder(self, booking: Booking, event: Event) -> None:
        ...

    def refund_follow_up(self, booking: Booking, payment_reference: str, reason: str) -> None:
        ...


def _booking_payload(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "booking_reference": booking.booking_reference,
        "event_id": booking.event_id,
        "number_of_tickets": booking.number_of_tickets,
        "total_amount": str(booking.total_amount),
        "currency": booking.currency,
        "user_id": booking.user_id,
        "guest_email": booking.guest_email,
    }


class OutboxNotifier:
    """
    Records notifications as outbox rows for a separate publisher.

    Each row goes in under its own savepoint and failures are only
    logged, so a broken notification never undoes a booking transition.
    """

    def __init__(self, db: Session):
        self.db = db
        self.outbox = OutboxRepository(db)

    def booking_confirmed(self, booking: Booking) -> None:
        self._publish(
            booking,
            "BOOKING_CONFIRMED",
            _booking_payload(booking),
            dedupe_key=f"booking:{booking.id}:confirmed",
        )

    def booking_cancelled(self, booking: Booking, refund_pending: bool) -> None:
        payload = _booking_payload(booking)
        payload.update(
            {
                "cancelled_by": booking.cancelled_by.value if booking.cancelled_by else None,
                "reason": booking.cancellation_reason,
                "refund_pending": refund_pending,
            }
        )
        self._publish(
            booking,
            "BOOKING_CANCELLED",
            payload,
            dedupe_key=f"booking:{booking.id}:cancelled",
        )

    def event_reminder(self, booking: Booking, event: Event) -> None:
        payload = _booking_payload(booking)
        payload.update({"event_title": event.title, "starts_at": event.date_time.isoformat()})
        self._publish(
            booking,
            "EVENT_REMINDER",
            payload,
            dedupe_key=f"booking:{booking.id}:reminder",
        )

    def refund_follow_up(self, booking: Booking, payment_reference: str, reason: str) -> None:
        payload = _booking_payload(booking)
        payload.update({"payment_reference": payment_reference, "reason": reason})
        self._publish(
            booking,
            "REFUND_FOLLOW_UP",
            payload,
            dedupe_key=f"booking:{booking.id}:refund_follow_up:{payment_reference}",
        )

    def _publish(self, booking: Booking, event_type: str, payload: dict, dedupe_key: str) -> None:
        try:
            with self.db.begin_nested():
                self.outbox.add(
                    aggregate_type=BOOKING_AGGREGATE,
                    aggregate_id=booking.id,
                    event_type=event_type,
                    payload=payload,
                    dedupe_key=dedupe_key,
                )
        except Exception:
            logger.exception(
                "Failed to record %s notification. booking_id=%s",
                event_type,
                booking.id,
            )
