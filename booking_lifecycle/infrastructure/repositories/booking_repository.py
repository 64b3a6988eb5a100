# booking_lifecycle/infrastructure/repositories/booking_repository.py

import secrets
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import func, select, update

from booking_lifecycle.infrastructure.db.models import Booking
from booking_lifecycle.domain.booking_intent import BookingIntent, validate_intent
from booking_lifecycle.domain.exceptions import BookingNotFoundError, StaleState
from booking_lifecycle.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    InventoryState,
    PaymentStateMachine,
    PaymentStatus,
)

REFERENCE_PREFIX = "BK-"
_REFERENCE_ATTEMPTS = 5


def generate_booking_reference() -> str:
    return f"{REFERENCE_PREFIX}{secrets.token_hex(4).upper()}"


class BookingRepository:
    """
    Durable booking records.

    Status changes are conditional updates: the caller names the state it
    read, and the write only lands if the row is still in that state.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get(self, booking_id: str) -> Booking:
        booking = self.get_by_id(booking_id)
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    def find_by_reference(self, booking_reference: str) -> Booking | None:
        stmt = select(Booking).where(Booking.booking_reference == booking_reference)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_by_session_id(self, session_id: str) -> Booking | None:
        stmt = select(Booking).where(Booking.processor_session_id == session_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create(
        self,
        intent: BookingIntent,
        price_per_ticket: Decimal,
        currency: str,
        created_at: datetime | None = None,
    ) -> Booking:
        validate_intent(intent)

        payer = intent.payer
        booking = Booking(
            event_id=intent.event_id,
            booking_reference=self._unused_reference(),
            user_id=payer.user_id,
            guest_name=payer.name.strip() if payer.name else None,
            guest_email=payer.email.strip().lower() if payer.email else None,
            guest_phone=payer.phone,
            number_of_tickets=intent.number_of_tickets,
            price_per_ticket=price_per_ticket,
            total_amount=price_per_ticket * intent.number_of_tickets,
            currency=currency,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            inventory_state=InventoryState.UNADJUSTED,
            checkout_attempts=0,
        )
        if created_at is not None:
            booking.created_at = created_at

        self.db.add(booking)
        self.db.flush()
        return booking

    def transition(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        **extra_fields,
    ) -> Booking:
        BookingStateMachine.validate_transition(expected_status, new_status)

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == expected_status)
            .values(status=new_status, **extra_fields)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 0:
            current = self.get(booking_id)
            raise StaleState(
                booking_id=booking_id,
                expected=expected_status.value,
                actual=current.status.value,
            )
        return self.get(booking_id)

    def transition_payment(
        self,
        booking_id: str,
        expected_payment_status: PaymentStatus,
        new_payment_status: PaymentStatus,
        **extra_fields,
    ) -> Booking:
        PaymentStateMachine.validate_transition(expected_payment_status, new_payment_status)

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.payment_status == expected_payment_status)
            .values(payment_status=new_payment_status, **extra_fields)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 0:
            current = self.get(booking_id)
            raise StaleState(
                booking_id=booking_id,
                expected=expected_payment_status.value,
                actual=current.payment_status.value,
            )
        return self.get(booking_id)

    def begin_checkout_attempt(self, booking_id: str) -> int:
        """Count a new checkout initiation and return its 1-based number."""
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.PENDING)
            .values(checkout_attempts=Booking.checkout_attempts + 1)
            .returning(Booking.checkout_attempts)
            .execution_options(synchronize_session=False)
        )
        attempts = self.db.execute(stmt).scalar_one_or_none()
        if attempts is None:
            self._raise_not_pending(booking_id)
        return attempts

    def record_checkout_session(self, booking_id: str, session_id: str) -> Booking:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.PENDING)
            .values(processor_session_id=session_id)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 0:
            self._raise_not_pending(booking_id)
        return self.get(booking_id)

    def attach_payment_reference(self, booking_id: str, payment_reference: str) -> bool:
        """Record the capture behind a booking confirmed without one."""
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.payment_reference.is_(None))
            .values(payment_reference=payment_reference)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def _raise_not_pending(self, booking_id: str) -> None:
        current = self.get(booking_id)
        raise StaleState(
            booking_id=booking_id,
            expected=BookingStatus.PENDING.value,
            actual=current.status.value,
        )

    def list_for_event(
        self,
        event_id: str,
        statuses: tuple[BookingStatus, ...],
    ) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.event_id == event_id)
            .where(Booking.status.in_(statuses))
            .order_by(Booking.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_stale_pending(self, cutoff: datetime) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.created_at < cutoff)
            .order_by(Booking.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def confirmed_ticket_count(self, event_id: str) -> int:
        stmt = (
            select(func.coalesce(func.sum(Booking.number_of_tickets), 0))
            .where(Booking.event_id == event_id)
            .where(Booking.status == BookingStatus.CONFIRMED)
        )
        return int(self.db.execute(stmt).scalar_one())

    def _unused_reference(self) -> str:
        # The unique constraint is the real guard; this just avoids a
        # failed flush on the rare collision.
        for _ in range(_REFERENCE_ATTEMPTS):
            reference = generate_booking_reference()
            if self.find_by_reference(reference) is None:
                return reference
        raise RuntimeError("Could not generate an unused booking reference")
