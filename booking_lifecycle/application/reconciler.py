import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_lifecycle.application.compensator import (
    CAPACITY_UNAVAILABLE,
    DUPLICATE_CAPTURE,
    LATE_CAPTURE,
    CancellationCompensator,
    CancellationResult,
)
from booking_lifecycle.application.notifications import Notifier, OutboxNotifier
from booking_lifecycle.domain.clock import utc_now
from booking_lifecycle.domain.exceptions import (
    BookingNotFoundError,
    CapacityExceeded,
    StaleState,
)
from booking_lifecycle.domain.state_machine import (
    BookingStatus,
    CancellationInitiator,
    ConfirmationSource,
    InventoryState,
    PaymentStatus,
)
from booking_lifecycle.infrastructure.db.models import Booking
from booking_lifecycle.infrastructure.payments.gateway import (
    NotificationOutcome,
    PaymentNotification,
    PaymentProcessor,
    SessionState,
)
from booking_lifecycle.infrastructure.repositories.booking_repository import BookingRepository
from booking_lifecycle.infrastructure.repositories.inventory_ledger import InventoryLedger
from booking_lifecycle.infrastructure.repositories.webhook_repository import (
    PaymentWebhookRepository,
)

logger = logging.getLogger(__name__)

CHECKOUT_EXPIRED = "checkout_expired"
PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class ConfirmationResult:
    booking: Booking
    # False when the booking had already left pending before this call.
    confirmed: bool
    refund: CancellationResult | None = None


@dataclass(frozen=True)
class WebhookResult:
    delivery_id: str
    event_type: str
    action: str
    booking_id: str | None = None


class PaymentOutcomeReconciler:
    """
    Applies payment outcomes to bookings.

    Confirmation decrements inventory and flips the booking in a single
    transaction guarded on status pending. Whoever loses the race (a
    duplicate webhook, the polling path, a host confirm) rolls back its
    decrement and gets an idempotent success.
    """

    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        notifier: Notifier | None = None,
        compensator: CancellationCompensator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.processor = processor
        self.notifier = notifier or OutboxNotifier(db)
        self.clock = clock
        self.compensator = compensator or CancellationCompensator(
            db,
            processor,
            notifier=self.notifier,
            clock=clock,
        )
        self.bookings = BookingRepository(db)
        self.ledger = InventoryLedger(db)
        self.webhooks = PaymentWebhookRepository(db)

    def confirm(
        self,
        booking_id: str,
        payment_reference: str | None = None,
        source: ConfirmationSource = ConfirmationSource.WEBHOOK,
    ) -> ConfirmationResult:
        booking = self.bookings.get(booking_id)
        if booking.status != BookingStatus.PENDING:
            return self._already_settled(booking, payment_reference)

        try:
            if not booking.spots_decremented:
                self.ledger.adjust_spots(booking.event_id, -booking.number_of_tickets)
            booking = self.bookings.transition(
                booking_id,
                BookingStatus.PENDING,
                BookingStatus.CONFIRMED,
                payment_status=PaymentStatus.PAID,
                inventory_state=InventoryState.DECREMENTED,
                payment_reference=payment_reference or booking.payment_reference,
                confirmation_source=source,
            )
        except CapacityExceeded:
            self.db.rollback()
            logger.error(
                "Event full after payment; cancelling with refund. booking_id=%s payment_reference=%s",
                booking_id,
                payment_reference,
            )
            self._cancel_for_capacity(booking_id, payment_reference)
            raise
        except StaleState:
            # Rolling back also undoes the decrement above.
            self.db.rollback()
            logger.info("Booking settled concurrently. booking_id=%s", booking_id)
            return self._already_settled(self.bookings.get(booking_id), payment_reference)

        self.db.commit()
        logger.info(
            "Booking confirmed. booking_id=%s source=%s payment_reference=%s",
            booking_id,
            source.value,
            payment_reference,
        )

        self.notifier.booking_confirmed(booking)
        self.db.commit()
        return ConfirmationResult(booking=booking, confirmed=True)

    def abort(self, booking_id: str, reason: str) -> Booking:
        booking = self.bookings.get(booking_id)
        if booking.status != BookingStatus.PENDING:
            self.db.commit()
            return booking

        try:
            booking = self.bookings.transition(
                booking_id,
                BookingStatus.PENDING,
                BookingStatus.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                cancelled_at=self.clock(),
                cancelled_by=CancellationInitiator.SYSTEM,
                cancellation_reason=reason,
            )
        except StaleState:
            self.db.rollback()
            return self.bookings.get(booking_id)

        self.db.commit()
        logger.info("Booking aborted. booking_id=%s reason=%s", booking_id, reason)
        return booking

    def verify_checkout_session(self, session_id: str) -> ConfirmationResult:
        booking = self.bookings.find_by_session_id(session_id)
        if not booking:
            raise BookingNotFoundError(session_id)
        booking_id = booking.id
        self.db.commit()

        status = self.processor.fetch_session_status(session_id)
        if status.state == SessionState.PAID:
            return self.confirm(
                booking_id,
                payment_reference=status.payment_reference,
                source=ConfirmationSource.VERIFICATION,
            )
        if status.state == SessionState.EXPIRED:
            return ConfirmationResult(
                booking=self.abort(booking_id, CHECKOUT_EXPIRED),
                confirmed=False,
            )
        return ConfirmationResult(booking=self.bookings.get(booking_id), confirmed=False)

    def handle_webhook(
        self,
        body: bytes,
        signature: str | None,
        delivery_id: str | None = None,
    ) -> WebhookResult:
        notification = self.processor.parse_webhook(body, signature, delivery_id)
        booking = self._resolve_booking(notification)
        booking_id = booking.id if booking else None

        if self.webhooks.find(self.processor.provider, notification.delivery_id):
            self.db.commit()
            return self._webhook_result(notification, "duplicate", booking_id)

        try:
            self.webhooks.record(
                provider=self.processor.provider,
                delivery_id=notification.delivery_id,
                event_type=notification.event_type,
                payload_hash=notification.payload_hash,
                payment_reference=notification.payment_reference,
                booking_id=booking_id,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self._webhook_result(notification, "duplicate", booking_id)

        if notification.outcome == NotificationOutcome.IGNORED:
            return self._webhook_result(notification, "ignored", booking_id)
        if booking_id is None:
            logger.warning(
                "Webhook for unknown booking. delivery_id=%s session_id=%s",
                notification.delivery_id,
                notification.session_id,
            )
            return self._webhook_result(notification, "unmatched", None)

        if notification.outcome == NotificationOutcome.FAILED:
            self.abort(booking_id, PAYMENT_FAILED)
            return self._webhook_result(notification, "aborted", booking_id)

        try:
            result = self.confirm(
                booking_id,
                payment_reference=notification.payment_reference,
                source=ConfirmationSource.WEBHOOK,
            )
        except CapacityExceeded:
            return self._webhook_result(notification, CAPACITY_UNAVAILABLE, booking_id)

        action = "confirmed" if result.confirmed else "already_settled"
        if result.refund is not None:
            action = "refunded"
        return self._webhook_result(notification, action, booking_id)

    def _already_settled(
        self,
        booking: Booking,
        payment_reference: str | None,
    ) -> ConfirmationResult:
        booking_id = booking.id
        known_reference = booking.payment_reference

        if payment_reference and payment_reference != known_reference:
            if booking.status == BookingStatus.CANCELLED and not known_reference:
                # Aborted before payment, or confirmed by hand and cancelled
                # before the processor reported the capture.
                refund = self.compensator.refund_capture(booking_id, payment_reference, LATE_CAPTURE)
                return ConfirmationResult(booking=refund.booking, confirmed=False, refund=refund)

            if known_reference:
                refund = self.compensator.refund_capture(
                    booking_id,
                    payment_reference,
                    DUPLICATE_CAPTURE,
                )
                return ConfirmationResult(booking=refund.booking, confirmed=False, refund=refund)

            if booking.status == BookingStatus.CONFIRMED:
                # Confirmed by hand before the processor reported the capture.
                self.bookings.attach_payment_reference(booking_id, payment_reference)
                booking = self.bookings.get(booking_id)

        self.db.commit()
        return ConfirmationResult(booking=booking, confirmed=False)

    def _cancel_for_capacity(self, booking_id: str, payment_reference: str | None) -> None:
        booking = self.bookings.get(booking_id)
        if booking.status != BookingStatus.PENDING:
            self.db.commit()
            return
        try:
            self.compensator.claim(
                booking,
                CancellationInitiator.SYSTEM,
                CAPACITY_UNAVAILABLE,
                captured_payment_reference=payment_reference,
            )
            self.db.commit()
        except StaleState:
            self.db.rollback()
            return
        self.compensator.settle_claim(booking_id)

    def _resolve_booking(self, notification: PaymentNotification) -> Booking | None:
        booking = None
        if notification.session_id:
            booking = self.bookings.find_by_session_id(notification.session_id)
        if booking is None and notification.booking_id:
            booking = self.bookings.get_by_id(notification.booking_id)
        return booking

    @staticmethod
    def _webhook_result(
        notification: PaymentNotification,
        action: str,
        booking_id: str | None,
    ) -> WebhookResult:
        logger.info(
            "Webhook handled. delivery_id=%s event_type=%s action=%s booking_id=%s",
            notification.delivery_id,
            notification.event_type,
            action,
            booking_id,
        )
        return WebhookResult(
            delivery_id=notification.delivery_id,
            event_type=notification.event_type,
            action=action,
            booking_id=booking_id,
        )
