import logging
import os
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import Session

from booking_lifecycle.application.checkout import CheckoutSessionInitiator, CheckoutStarted
from booking_lifecycle.application.compensator import (
    CancellationCompensator,
    CancellationResult,
    EventCancellationResult,
)
from booking_lifecycle.application.notifications import Notifier, OutboxNotifier
from booking_lifecycle.application.reconciler import (
    ConfirmationResult,
    PaymentOutcomeReconciler,
    WebhookResult,
)
from booking_lifecycle.application.retry import RetryPolicy
from booking_lifecycle.domain.booking_intent import BookingIntent, Payer, validate_intent
from booking_lifecycle.domain.cancellation_policy import CancellationPolicy
from booking_lifecycle.domain.clock import utc_now
from booking_lifecycle.domain.exceptions import (
    CapacityExceeded,
    CheckoutInitiationFailed,
    ValidationError,
)
from booking_lifecycle.domain.state_machine import (
    BookingStatus,
    CancellationInitiator,
    ConfirmationSource,
)
from booking_lifecycle.infrastructure.db.models import Booking, Event, EventInventory
from booking_lifecycle.infrastructure.payments.gateway import (
    PaymentProcessor,
    PaymentProcessorError,
    SessionState,
)
from booking_lifecycle.infrastructure.repositories.booking_repository import BookingRepository
from booking_lifecycle.infrastructure.repositories.event_repository import (
    EVENT_ACTIVE,
    EventRepository,
)
from booking_lifecycle.infrastructure.repositories.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)

BOOKING_CURRENCY = os.getenv("BOOKING_CURRENCY", "INR")
PENDING_BOOKING_TTL_MINUTES = int(os.getenv("PENDING_BOOKING_TTL_MINUTES", "30"))
REMINDER_WINDOW_HOURS = int(os.getenv("REMINDER_WINDOW_HOURS", "24"))

CHECKOUT_ABANDONED = "checkout_abandoned"


class BookingService:
    """Application service coordinating booking workflow."""

    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        retry_policy: RetryPolicy | None = None,
        cancellation_policy: CancellationPolicy | None = None,
        currency: str = BOOKING_CURRENCY,
    ):
        self.db = db
        self.processor = processor
        self.clock = clock
        self.currency = currency
        self.notifier = notifier or OutboxNotifier(db)

        self.events = EventRepository(db)
        self.bookings = BookingRepository(db)
        self.ledger = InventoryLedger(db)

        self.initiator = CheckoutSessionInitiator(
            db,
            processor,
            policy=retry_policy,
            sleep=sleep,
        )
        self.compensator = CancellationCompensator(
            db,
            processor,
            notifier=self.notifier,
            policy=cancellation_policy,
            clock=clock,
        )
        self.reconciler = PaymentOutcomeReconciler(
            db,
            processor,
            notifier=self.notifier,
            compensator=self.compensator,
            clock=clock,
        )

    # Events and inventory

    def create_event(
        self,
        title: str,
        host_id: str,
        date_time: datetime,
        price_per_ticket: Decimal,
        capacity: int,
    ) -> tuple[Event, EventInventory]:
        event = self.events.create(
            title=title,
            host_id=host_id,
            date_time=date_time,
            price_per_ticket=price_per_ticket,
        )
        inventory = self.ledger.create_or_reset(event.id, capacity)
        self.db.commit()
        logger.info("Event created. event_id=%s capacity=%s", event.id, capacity)
        return event, inventory

    def get_event(self, event_id: str) -> tuple[Event, EventInventory]:
        return self.events.get(event_id), self.ledger.get(event_id)

    def update_capacity(self, event_id: str, capacity: int) -> EventInventory:
        self.events.get(event_id)
        self.ledger.update_capacity(event_id, capacity)
        self.db.commit()
        return self.ledger.get(event_id)

    def recalculate_inventory(self, event_id: str) -> EventInventory:
        self.events.get(event_id)
        confirmed = self.bookings.confirmed_ticket_count(event_id)
        spots_left = self.ledger.recalculate(event_id, confirmed)
        self.db.commit()
        logger.info(
            "Inventory recalculated. event_id=%s confirmed_tickets=%s spots_left=%s",
            event_id,
            confirmed,
            spots_left,
        )
        return self.ledger.get(event_id)

    def cancel_event(self, event_id: str, reason: str | None = None) -> EventCancellationResult:
        return self.compensator.cancel_event(event_id, reason)

    # Bookings

    def start_checkout(self, event_id: str, ticket_count: int, payer: Payer) -> CheckoutStarted:
        intent = BookingIntent(event_id=event_id, number_of_tickets=ticket_count, payer=payer)
        validate_intent(intent)

        event = self.events.get(event_id)
        if event.status != EVENT_ACTIVE:
            raise ValidationError(f"Event {event_id} is not open for booking", field="event_id")

        # Early check only; the real guard is the decrement at confirmation.
        inventory = self.ledger.get(event_id)
        if inventory.spots_left < ticket_count:
            raise CapacityExceeded(
                event_id=event_id,
                requested=ticket_count,
                spots_left=inventory.spots_left,
            )

        booking = self.bookings.create(
            intent,
            price_per_ticket=event.price_per_ticket,
            currency=self.currency,
            created_at=self.clock(),
        )
        booking_id = booking.id
        booking_reference = booking.booking_reference
        self.db.commit()
        logger.info(
            "Booking created. booking_id=%s reference=%s event_id=%s tickets=%s",
            booking_id,
            booking_reference,
            event_id,
            ticket_count,
        )

        try:
            return self.initiator.initiate(booking_id)
        except CheckoutInitiationFailed as exc:
            logger.error(
                "Checkout could not be started; booking left pending. reference=%s attempts=%s",
                booking_reference,
                exc.attempts,
            )
            raise

    def retry_checkout(self, booking_id: str) -> CheckoutStarted:
        return self.initiator.initiate(booking_id)

    def get_booking(self, booking_id: str) -> Booking:
        return self.bookings.get(booking_id)

    def find_booking_by_reference(self, booking_reference: str) -> Booking | None:
        return self.bookings.find_by_reference(booking_reference)

    def cancel_booking(
        self,
        booking_id: str,
        initiator: CancellationInitiator = CancellationInitiator.USER,
        reason: str | None = None,
    ) -> CancellationResult:
        return self.compensator.cancel(booking_id, initiator, reason)

    def confirm_manually(self, booking_id: str) -> ConfirmationResult:
        return self.reconciler.confirm(booking_id, source=ConfirmationSource.MANUAL)

    def resolve_manual_refund(self, booking_id: str, refund_reference: str) -> Booking:
        return self.compensator.resolve_manual_refund(booking_id, refund_reference)

    # Payments

    def verify_checkout_session(self, session_id: str) -> ConfirmationResult:
        return self.reconciler.verify_checkout_session(session_id)

    def handle_webhook(
        self,
        body: bytes,
        signature: str | None,
        delivery_id: str | None = None,
    ) -> WebhookResult:
        return self.reconciler.handle_webhook(body, signature, delivery_id)

    # Maintenance

    def abort_stale_pending(
        self,
        older_than: timedelta = timedelta(minutes=PENDING_BOOKING_TTL_MINUTES),
    ) -> int:
        cutoff = self.clock() - older_than
        stale = [
            (booking.id, booking.processor_session_id)
            for booking in self.bookings.list_stale_pending(cutoff)
        ]
        self.db.commit()

        aborted = 0
        for booking_id, session_id in stale:
            if session_id and not self._close_checkout(booking_id, session_id):
                continue
            booking = self.reconciler.abort(booking_id, CHECKOUT_ABANDONED)
            if (
                booking.status == BookingStatus.CANCELLED
                and booking.cancellation_reason == CHECKOUT_ABANDONED
            ):
                aborted += 1
            self.db.commit()

        logger.info("Stale pending sweep done. cutoff=%s aborted=%s", cutoff.isoformat(), aborted)
        return aborted

    def _close_checkout(self, booking_id: str, session_id: str) -> bool:
        """
        Make sure an abandoned session can no longer take a payment.

        Returns False when the booking must not be aborted: the session was
        paid (the booking is confirmed, or refunded if the event filled up)
        or the processor could not be reached (the next sweep retries).
        """
        try:
            status = self.processor.fetch_session_status(session_id)
            if status.state == SessionState.OPEN:
                self.processor.expire_checkout_session(session_id)
        except PaymentProcessorError as exc:
            logger.warning(
                "Could not close abandoned checkout; will retry. booking_id=%s session_id=%s error=%s",
                booking_id,
                session_id,
                exc,
            )
            return False

        if status.state != SessionState.PAID:
            return True

        logger.warning(
            "Abandoned checkout was paid without a notification. booking_id=%s payment_reference=%s",
            booking_id,
            status.payment_reference,
        )
        try:
            self.reconciler.confirm(
                booking_id,
                payment_reference=status.payment_reference,
                source=ConfirmationSource.VERIFICATION,
            )
        except CapacityExceeded:
            # Already cancelled and refunded by the reconciler.
            pass
        return False

    def send_event_reminders(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        window_end = now + timedelta(hours=REMINDER_WINDOW_HOURS)

        reminded = 0
        for event in self.events.list_starting_between(now, window_end):
            for booking in self.bookings.list_for_event(event.id, (BookingStatus.CONFIRMED,)):
                self.notifier.event_reminder(booking, event)
                reminded += 1
        self.db.commit()

        logger.info("Event reminders queued. window_end=%s bookings=%s", window_end.isoformat(), reminded)
        return reminded
