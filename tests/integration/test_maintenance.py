# tests/integration/test_maintenance.py

from datetime import timedelta

from booking_lifecycle.domain.state_machine import BookingStatus, ConfirmationSource, PaymentStatus
from booking_lifecycle.infrastructure.payments.gateway import PaymentProcessorError
from booking_lifecycle.infrastructure.repositories.outbox_repository import OutboxRepository


def _reminders(session):
    events = OutboxRepository(session).list_by_status("PENDING", limit=100)
    session.commit()
    return [item for item in events if item.event_type == "EVENT_REMINDER"]


def test_sweep_aborts_abandoned_checkouts(service, processor, clock, create_event, start_booking):
    event_id = create_event(capacity=5)
    stale_id, stale_session = start_booking(event_id, tickets=1)
    clock.advance(minutes=25)
    fresh_id, fresh_session = start_booking(event_id, tickets=1)
    clock.advance(minutes=10)

    aborted = service.abort_stale_pending(older_than=timedelta(minutes=30))

    assert aborted == 1
    stale = service.get_booking(stale_id)
    assert stale.status == BookingStatus.CANCELLED
    assert stale.payment_status == PaymentStatus.FAILED
    assert stale.cancellation_reason == "checkout_abandoned"
    assert service.get_booking(fresh_id).status == BookingStatus.PENDING
    assert processor.expired == [stale_session]
    assert fresh_session not in processor.expired


def test_sweep_leaves_settled_bookings_alone(service, clock, create_event, confirmed_booking):
    event_id = create_event()
    booking_id, _ = confirmed_booking(event_id)
    clock.advance(hours=2)

    assert service.abort_stale_pending(older_than=timedelta(minutes=30)) == 0
    assert service.get_booking(booking_id).status == BookingStatus.CONFIRMED


def test_sweep_leaves_booking_pending_when_link_cannot_be_closed(
    service, processor, clock, create_event, start_booking
):
    event_id = create_event()
    first_id, _ = start_booking(event_id)
    second_id, _ = start_booking(event_id)
    clock.advance(hours=1)
    processor.expire_failures = [PaymentProcessorError("processor unavailable")]

    assert service.abort_stale_pending(older_than=timedelta(minutes=30)) == 1
    statuses = sorted(service.get_booking(booking_id).status.value for booking_id in (first_id, second_id))
    assert statuses == sorted([BookingStatus.CANCELLED.value, BookingStatus.PENDING.value])

    assert service.abort_stale_pending(older_than=timedelta(minutes=30)) == 1
    assert service.get_booking(first_id).status == BookingStatus.CANCELLED
    assert service.get_booking(second_id).status == BookingStatus.CANCELLED


def test_sweep_confirms_checkout_paid_without_notification(
    service, processor, clock, create_event, start_booking
):
    event_id = create_event(capacity=5)
    booking_id, session_id = start_booking(event_id, tickets=2)
    payment_reference = processor.pay(session_id)
    clock.advance(minutes=31)

    assert service.abort_stale_pending(older_than=timedelta(minutes=30)) == 0

    booking = service.get_booking(booking_id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.payment_reference == payment_reference
    assert booking.confirmation_source == ConfirmationSource.VERIFICATION
    assert service.get_event(event_id)[1].spots_left == 3
    assert processor.expired == []
    assert processor.refunds == []


def test_sweep_refunds_paid_checkout_when_event_is_full(
    service, processor, clock, create_event, start_booking
):
    event_id = create_event(capacity=1)
    first_id, first_session = start_booking(event_id)
    second_id, second_session = start_booking(event_id)
    service.reconciler.confirm(first_id, payment_reference=processor.pay(first_session))
    late_reference = processor.pay(second_session)
    clock.advance(hours=1)

    assert service.abort_stale_pending(older_than=timedelta(minutes=30)) == 0

    booking = service.get_booking(second_id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancellation_reason == "capacity_unavailable"
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert [refund["payment_reference"] for refund in processor.refunds] == [late_reference]


def test_sweep_retries_when_session_status_is_unavailable(
    service, processor, clock, create_event, start_booking
):
    event_id = create_event()
    booking_id, session_id = start_booking(event_id)
    clock.advance(hours=1)
    del processor.sessions[session_id]

    assert service.abort_stale_pending(older_than=timedelta(minutes=30)) == 0
    assert service.get_booking(booking_id).status == BookingStatus.PENDING


def test_payment_after_sweep_is_refunded(service, processor, clock, create_event, start_booking):
    event_id = create_event()
    booking_id, session_id = start_booking(event_id)
    clock.advance(hours=1)
    service.abort_stale_pending(older_than=timedelta(minutes=30))
    payment_reference = processor.pay(session_id)

    result = service.reconciler.confirm(booking_id, payment_reference=payment_reference)

    assert result.refund is not None
    assert service.get_booking(booking_id).payment_status == PaymentStatus.REFUNDED


def test_reminders_cover_confirmed_bookings_in_window(
    service, create_event, confirmed_booking, start_booking
):
    soon = create_event(starts_in=timedelta(hours=20), title="Tasting Menu")
    later = create_event(starts_in=timedelta(days=3), title="Brunch")
    confirmed_id, _ = confirmed_booking(soon)
    start_booking(soon)
    confirmed_booking(later)

    assert service.send_event_reminders() == 1

    reminders = _reminders(service.db)
    assert [item.aggregate_id for item in reminders] == [confirmed_id]
    assert "Tasting Menu" in reminders[0].payload


def test_reminders_are_not_queued_twice(service, create_event, confirmed_booking):
    event_id = create_event(starts_in=timedelta(hours=3))
    confirmed_booking(event_id)

    service.send_event_reminders()
    service.send_event_reminders()

    assert len(_reminders(service.db)) == 1


def test_reminders_skip_cancelled_events(service, create_event, confirmed_booking):
    event_id = create_event(starts_in=timedelta(hours=3))
    confirmed_booking(event_id)
    service.cancel_event(event_id)

    assert service.send_event_reminders() == 0
