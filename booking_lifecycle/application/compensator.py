import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import Session

from booking_lifecycle.application.notifications import Notifier, OutboxNotifier
from booking_lifecycle.domain.cancellation_policy import CancellationPolicy
from booking_lifecycle.domain.clock import utc_now
from booking_lifecycle.domain.exceptions import (
    BookingLifecycleError,
    NotCancellable,
    RefundFailed,
    StaleState,
)
from booking_lifecycle.domain.state_machine import (
    BookingStatus,
    CancellationInitiator,
    InventoryState,
    PaymentStateMachine,
    PaymentStatus,
)
from booking_lifecycle.infrastructure.db.models import Booking
from booking_lifecycle.infrastructure.payments.gateway import (
    PaymentProcessor,
    PaymentProcessorError,
)
from booking_lifecycle.infrastructure.repositories.booking_repository import BookingRepository
from booking_lifecycle.infrastructure.repositories.event_repository import EventRepository
from booking_lifecycle.infrastructure.repositories.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)

CAPACITY_UNAVAILABLE = "capacity_unavailable"
LATE_CAPTURE = "late_capture"
DUPLICATE_CAPTURE = "duplicate_capture"


@dataclass(frozen=True)
class CancellationResult:
    booking: Booking
    refund_reference: str | None = None
    # True when the refund could not be issued and awaits manual follow-up.
    refund_pending: bool = False


@dataclass(frozen=True)
class EventCancellationResult:
    event_id: str
    cancelled: list[CancellationResult] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class _RefundRequest:
    booking_id: str
    payment_reference: str
    amount: Decimal
    currency: str
    idempotency_key: str


class CancellationCompensator:
    """
    Cancels bookings and undoes their effects.

    The cancellation is claimed first (status, inventory restore and
    refund_pending committed together) and only then is the processor
    asked for the refund, so two concurrent cancels can never both refund.
    Every refund in the system goes through _refund.
    """

    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        notifier: Notifier | None = None,
        policy: CancellationPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.processor = processor
        self.notifier = notifier or OutboxNotifier(db)
        self.policy = policy or CancellationPolicy()
        self.clock = clock
        self.bookings = BookingRepository(db)
        self.events = EventRepository(db)
        self.ledger = InventoryLedger(db)

    def cancel(
        self,
        booking_id: str,
        initiator: CancellationInitiator,
        reason: str | None = None,
    ) -> CancellationResult:
        booking = self.bookings.get(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise NotCancellable(booking_id, "booking is already cancelled")

        event = self.events.get(booking.event_id)
        decision = self.policy.evaluate(event.date_time, initiator, self.clock())
        if not decision.allowed:
            raise NotCancellable(booking_id, decision.reason)

        booking = self.claim(booking, initiator, reason)
        request = self._refund_request(booking)
        # A link nobody paid through must not take a payment after this.
        open_session_id = None if booking.payment_reference else booking.processor_session_id
        self.db.commit()

        logger.info(
            "Booking cancelled. booking_id=%s initiator=%s refund_due=%s",
            booking_id,
            initiator.value,
            request is not None,
        )
        self._expire_open_session(booking_id, open_session_id)
        return self._settle(booking_id, request)

    def claim(
        self,
        booking: Booking,
        initiator: CancellationInitiator,
        reason: str | None = None,
        captured_payment_reference: str | None = None,
    ) -> Booking:
        """
        Transition to cancelled and restore inventory, inside the caller's
        transaction. Does not commit.

        captured_payment_reference names a capture the booking does not
        know about yet (capacity lost after payment).
        """
        payment_reference = captured_payment_reference
        if payment_reference is None and booking.payment_status == PaymentStatus.PAID:
            payment_reference = booking.payment_reference

        if payment_reference or booking.payment_status == PaymentStatus.PAID:
            new_payment_status = PaymentStatus.REFUND_PENDING
        elif booking.payment_status == PaymentStatus.PENDING:
            new_payment_status = PaymentStatus.FAILED
        else:
            new_payment_status = booking.payment_status

        if new_payment_status != booking.payment_status:
            PaymentStateMachine.validate_transition(booking.payment_status, new_payment_status)

        fields = {
            "payment_status": new_payment_status,
            "payment_reference": payment_reference or booking.payment_reference,
            "cancelled_at": self.clock(),
            "cancelled_by": initiator,
            "cancellation_reason": reason,
        }
        restore = booking.inventory_state == InventoryState.DECREMENTED
        if restore:
            fields["inventory_state"] = InventoryState.RESTORED

        tickets = booking.number_of_tickets
        event_id = booking.event_id
        claimed = self.bookings.transition(
            booking.id,
            booking.status,
            BookingStatus.CANCELLED,
            **fields,
        )
        if restore:
            self.ledger.adjust_spots(event_id, tickets)
        return claimed

    def refund_capture(
        self,
        booking_id: str,
        payment_reference: str,
        reason: str,
    ) -> CancellationResult:
        """
        Refund a capture the booking must not keep: a payment landing after
        the booking was cancelled, or a second payment for a booking that
        is already paid. Expects no uncommitted changes in the session.

        A cancelled booking with no capture on record takes this one as its
        own, so its refund settles the booking.
        """
        booking = self.bookings.get(booking_id)
        late_capture = (
            booking.status == BookingStatus.CANCELLED
            and not booking.payment_reference
            and booking.payment_status in (PaymentStatus.FAILED, PaymentStatus.REFUND_PENDING)
        )
        if late_capture:
            try:
                booking = self._claim_capture(booking, payment_reference)
            except StaleState:
                # Another delivery of the same capture claimed the refund.
                self.db.rollback()
                return CancellationResult(booking=self.bookings.get(booking_id))

        request = _RefundRequest(
            booking_id=booking.id,
            payment_reference=payment_reference,
            amount=booking.total_amount,
            currency=booking.currency,
            idempotency_key=f"{booking.booking_reference}-refund-{payment_reference}",
        )
        self.db.commit()

        logger.warning(
            "Refunding unexpected capture. booking_id=%s payment_reference=%s reason=%s",
            booking_id,
            payment_reference,
            reason,
        )
        try:
            refund_reference = self._refund(request)
        except RefundFailed as exc:
            booking = self.bookings.get(booking_id)
            self.notifier.refund_follow_up(booking, payment_reference, exc.reason)
            self.db.commit()
            return CancellationResult(booking=booking, refund_pending=True)

        if late_capture:
            booking = self.bookings.transition_payment(
                booking_id,
                PaymentStatus.REFUND_PENDING,
                PaymentStatus.REFUNDED,
                refund_reference=refund_reference,
            )
        else:
            booking = self.bookings.get(booking_id)
        self.db.commit()
        return CancellationResult(booking=booking, refund_reference=refund_reference)

    def cancel_event(self, event_id: str, reason: str | None = None) -> EventCancellationResult:
        event = self.events.get(event_id)
        self.events.mark_cancelled(event)
        booking_ids = [
            booking.id
            for booking in self.bookings.list_for_event(
                event_id,
                (BookingStatus.PENDING, BookingStatus.CONFIRMED),
            )
        ]
        self.db.commit()

        result = EventCancellationResult(event_id=event_id)
        for booking_id in booking_ids:
            try:
                result.cancelled.append(
                    self.cancel(booking_id, CancellationInitiator.HOST, reason or "event_cancelled")
                )
            except BookingLifecycleError as exc:
                self.db.rollback()
                logger.warning(
                    "Could not cancel booking during event cancellation. "
                    "event_id=%s booking_id=%s error=%s",
                    event_id,
                    booking_id,
                    exc,
                )
                result.failed[booking_id] = str(exc)

        logger.info(
            "Event cancelled. event_id=%s cancelled=%s failed=%s",
            event_id,
            len(result.cancelled),
            len(result.failed),
        )
        return result

    def resolve_manual_refund(self, booking_id: str, refund_reference: str) -> Booking:
        booking = self.bookings.transition_payment(
            booking_id,
            PaymentStatus.REFUND_PENDING,
            PaymentStatus.REFUNDED,
            refund_reference=refund_reference,
        )
        self.db.commit()
        logger.info(
            "Manual refund recorded. booking_id=%s refund_reference=%s",
            booking_id,
            refund_reference,
        )
        return booking

    def settle_claim(self, booking_id: str) -> CancellationResult:
        """Run the refund leg for a claim the caller has already committed."""
        booking = self.bookings.get(booking_id)
        request = self._refund_request(booking)
        self.db.commit()
        return self._settle(booking_id, request)

    def _claim_capture(self, booking: Booking, payment_reference: str) -> Booking:
        if booking.payment_status == PaymentStatus.FAILED:
            return self.bookings.transition_payment(
                booking.id,
                PaymentStatus.FAILED,
                PaymentStatus.REFUND_PENDING,
                payment_reference=payment_reference,
            )
        # Already refund_pending for an offline payment that never existed.
        if not self.bookings.attach_payment_reference(booking.id, payment_reference):
            raise StaleState(
                booking_id=booking.id,
                expected="no payment reference",
                actual="payment reference recorded",
            )
        return self.bookings.get(booking.id)

    def _expire_open_session(self, booking_id: str, session_id: str | None) -> None:
        if not session_id:
            return
        try:
            self.processor.expire_checkout_session(session_id)
        except PaymentProcessorError as exc:
            logger.warning(
                "Could not expire checkout session of cancelled booking. "
                "booking_id=%s session_id=%s error=%s",
                booking_id,
                session_id,
                exc,
            )

    def _refund_request(self, booking: Booking) -> _RefundRequest | None:
        if booking.payment_status != PaymentStatus.REFUND_PENDING or not booking.payment_reference:
            return None
        return _RefundRequest(
            booking_id=booking.id,
            payment_reference=booking.payment_reference,
            amount=booking.total_amount,
            currency=booking.currency,
            idempotency_key=f"{booking.booking_reference}-refund-{booking.payment_reference}",
        )

    def _settle(self, booking_id: str, request: _RefundRequest | None) -> CancellationResult:
        if request is None:
            booking = self.bookings.get(booking_id)
            if booking.payment_status == PaymentStatus.REFUND_PENDING:
                # Paid outside the processor; nothing to refund automatically.
                self.notifier.refund_follow_up(booking, "offline", "no processor payment on record")
                self.notifier.booking_cancelled(booking, refund_pending=True)
                self.db.commit()
                return CancellationResult(booking=booking, refund_pending=True)
            self.notifier.booking_cancelled(booking, refund_pending=False)
            self.db.commit()
            return CancellationResult(booking=booking)

        try:
            refund_reference = self._refund(request)
        except RefundFailed as exc:
            booking = self.bookings.get(booking_id)
            self.notifier.refund_follow_up(booking, request.payment_reference, exc.reason)
            self.notifier.booking_cancelled(booking, refund_pending=True)
            self.db.commit()
            return CancellationResult(booking=booking, refund_pending=True)

        booking = self.bookings.transition_payment(
            booking_id,
            PaymentStatus.REFUND_PENDING,
            PaymentStatus.REFUNDED,
            refund_reference=refund_reference,
        )
        self.notifier.booking_cancelled(booking, refund_pending=False)
        self.db.commit()
        return CancellationResult(booking=booking, refund_reference=refund_reference)

    def _refund(self, request: _RefundRequest) -> str:
        try:
            refund_reference = self.processor.refund(
                payment_reference=request.payment_reference,
                amount=request.amount,
                currency=request.currency,
                idempotency_key=request.idempotency_key,
            )
        except PaymentProcessorError as exc:
            logger.warning(
                "Refund failed, manual follow-up required. booking_id=%s payment_reference=%s error=%s",
                request.booking_id,
                request.payment_reference,
                exc,
            )
            raise RefundFailed(request.booking_id, str(exc)) from exc
        except Exception as exc:
            # The cancellation is already committed; leave the refund to a person.
            logger.exception(
                "Refund raised unexpectedly, manual follow-up required. booking_id=%s payment_reference=%s",
                request.booking_id,
                request.payment_reference,
            )
            raise RefundFailed(request.booking_id, str(exc)) from exc

        logger.info(
            "Refund issued. booking_id=%s payment_reference=%s refund_reference=%s",
            request.booking_id,
            request.payment_reference,
            refund_reference,
        )
        return refund_reference
