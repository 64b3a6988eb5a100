import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from booking_lifecycle.application.retry import RetryExhausted, RetryPolicy, retry_with_backoff
from booking_lifecycle.domain.exceptions import CheckoutInitiationFailed, StaleState
from booking_lifecycle.domain.state_machine import BookingStatus
from booking_lifecycle.infrastructure.db.models import Booking
from booking_lifecycle.infrastructure.payments.gateway import (
    CheckoutSession,
    PaymentProcessor,
    PaymentProcessorError,
    TransientPaymentError,
)
from booking_lifecycle.infrastructure.repositories.booking_repository import BookingRepository
from booking_lifecycle.infrastructure.repositories.event_repository import EventRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutStarted:
    booking: Booking
    session_id: str
    checkout_url: str


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, TransientPaymentError)


class CheckoutSessionInitiator:
    """
    Opens a hosted checkout session for a pending booking.

    Every initiation gets its own idempotency key, shared by all of its
    retries, so a retried create can never open a second session. No
    database transaction is held while the processor is being called.
    """

    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.processor = processor
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.bookings = BookingRepository(db)
        self.events = EventRepository(db)

    def initiate(self, booking_id: str) -> CheckoutStarted:
        booking = self.bookings.get(booking_id)
        if booking.status != BookingStatus.PENDING:
            raise StaleState(
                booking_id=booking_id,
                expected=BookingStatus.PENDING.value,
                actual=booking.status.value,
            )

        event = self.events.get(booking.event_id)
        attempt_number = self.bookings.begin_checkout_attempt(booking_id)
        previous_session_id = booking.processor_session_id
        idempotency_key = f"{booking.booking_reference}-{attempt_number}"
        amount = booking.total_amount
        currency = booking.currency
        description = f"{booking.number_of_tickets} x {event.title}"
        metadata = {
            "booking_id": booking.id,
            "booking_reference": booking.booking_reference,
            "event_id": booking.event_id,
        }
        self.db.commit()

        if previous_session_id:
            self.expire_session(previous_session_id, booking_id)

        calls = 0

        def create_session() -> CheckoutSession:
            nonlocal calls
            calls += 1
            return self.processor.create_checkout_session(
                amount=amount,
                currency=currency,
                idempotency_key=idempotency_key,
                description=description,
                metadata=metadata,
            )

        try:
            session = retry_with_backoff(
                create_session,
                self.policy,
                is_retryable=_is_transient,
                sleep=self.sleep,
                description=f"Checkout session for booking {booking_id}",
            )
        except RetryExhausted as exc:
            raise CheckoutInitiationFailed(
                booking_id=booking_id,
                attempts=exc.attempts,
                reason=str(exc.last_error),
                booking_reference=metadata["booking_reference"],
            ) from exc
        except PaymentProcessorError as exc:
            logger.error("Checkout session rejected. booking_id=%s error=%s", booking_id, exc)
            raise CheckoutInitiationFailed(
                booking_id=booking_id,
                attempts=calls,
                reason=str(exc),
                booking_reference=metadata["booking_reference"],
            ) from exc

        try:
            booking = self.bookings.record_checkout_session(booking_id, session.session_id)
            self.db.commit()
        except StaleState:
            # Cancelled or confirmed while the session was being created.
            self.db.rollback()
            self.expire_session(session.session_id, booking_id)
            raise

        logger.info(
            "Checkout session opened. booking_id=%s session_id=%s attempt=%s",
            booking_id,
            session.session_id,
            attempt_number,
        )
        return CheckoutStarted(
            booking=booking,
            session_id=session.session_id,
            checkout_url=session.checkout_url,
        )

    def expire_session(self, session_id: str, booking_id: str) -> None:
        try:
            self.processor.expire_checkout_session(session_id)
        except PaymentProcessorError as exc:
            logger.warning(
                "Could not expire checkout session. booking_id=%s session_id=%s error=%s",
                booking_id,
                session_id,
                exc,
            )
