from datetime import timedelta
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from booking_lifecycle.application.booking_service import BookingService
from booking_lifecycle.api.schemas.schemas import (
    BookingResponse,
    CancelBookingRequest,
    CancellationResponse,
    CapacityUpdateRequest,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmationResponse,
    EventCancellationResponse,
    EventCancelRequest,
    EventCreate,
    EventResponse,
    InventoryResponse,
    OutboxEventResponse,
    ReminderResponse,
    ResolveRefundRequest,
    StaffCancelBookingRequest,
    SweepRequest,
    SweepResponse,
    VerifyCheckoutRequest,
    WebhookResponse,
)
from booking_lifecycle.application.checkout import CheckoutStarted
from booking_lifecycle.domain.booking_intent import Payer
from booking_lifecycle.domain.clock import as_utc
from booking_lifecycle.domain.exceptions import (
    BookingLifecycleError,
    BookingNotFoundError,
    CapacityExceeded,
    CheckoutInitiationFailed,
    EventNotFoundError,
    InvalidStateTransitionError,
    InventoryNotFoundError,
    InventoryOverflowError,
    NotCancellable,
    StaleState,
    ValidationError,
    WebhookVerificationError,
)
from booking_lifecycle.domain.state_machine import CancellationInitiator
from booking_lifecycle.infrastructure.db.models import Booking, Event, EventInventory, OutboxEvent
from booking_lifecycle.infrastructure.db.session import get_db
from booking_lifecycle.infrastructure.payments.gateway import PaymentProcessor, PaymentProcessorError
from booking_lifecycle.infrastructure.payments.razorpay_gateway import get_payment_processor
from booking_lifecycle.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)

_NOT_FOUND = (BookingNotFoundError, EventNotFoundError, InventoryNotFoundError)
_CONFLICT = (
    CapacityExceeded,
    StaleState,
    NotCancellable,
    InvalidStateTransitionError,
    InventoryOverflowError,
)


def payment_processor() -> PaymentProcessor:
    try:
        return get_payment_processor()
    except PaymentProcessorError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc


def get_booking_service(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(payment_processor),
) -> BookingService:
    return BookingService(db, processor)


async def _raw_body(request: Request) -> bytes:
    return await request.body()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, _NOT_FOUND):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, _CONFLICT):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "field": exc.field},
        )
    if isinstance(exc, CheckoutInitiationFailed):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "message": str(exc),
                "booking_id": exc.booking_id,
                "booking_reference": exc.booking_reference,
                "attempts": exc.attempts,
            },
        )
    if isinstance(exc, WebhookVerificationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, PaymentProcessorError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))

    logger.error("Unmapped domain error: %s", exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _event_response(event: Event, inventory: EventInventory) -> EventResponse:
    return EventResponse(
        id=event.id,
        title=event.title,
        host_id=event.host_id,
        date_time=as_utc(event.date_time).isoformat(),
        price_per_ticket=str(event.price_per_ticket),
        status=event.status,
        capacity=inventory.capacity,
        spots_left=inventory.spots_left,
        booked_spots=inventory.capacity - inventory.spots_left,
    )


def _inventory_response(inventory: EventInventory) -> InventoryResponse:
    return InventoryResponse(
        event_id=inventory.event_id,
        capacity=inventory.capacity,
        spots_left=inventory.spots_left,
        booked_spots=inventory.capacity - inventory.spots_left,
    )


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        event_id=booking.event_id,
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        inventory_state=booking.inventory_state.value,
        number_of_tickets=booking.number_of_tickets,
        total_amount=str(booking.total_amount),
        currency=booking.currency,
        checkout_attempts=booking.checkout_attempts,
        confirmation_source=(
            booking.confirmation_source.value if booking.confirmation_source else None
        ),
        cancelled_by=booking.cancelled_by.value if booking.cancelled_by else None,
        cancellation_reason=booking.cancellation_reason,
        refund_reference=booking.refund_reference,
    )


def _checkout_response(started: CheckoutStarted) -> CheckoutResponse:
    booking = started.booking
    return CheckoutResponse(
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        status=booking.status.value,
        checkout_url=started.checkout_url,
        session_id=started.session_id,
        checkout_attempts=booking.checkout_attempts,
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=as_utc(item.created_at).isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Booking lifecycle coordinator is running"}


@router.post("/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
def create_event(
    request: EventCreate,
    service: BookingService = Depends(get_booking_service),
):
    event, inventory = service.create_event(
        title=request.title,
        host_id=request.host_id,
        date_time=as_utc(request.date_time),
        price_per_ticket=request.price_per_ticket,
        capacity=request.capacity,
    )
    return _event_response(event, inventory)


@router.get("/events/{event_id}", response_model=EventResponse)
def get_event(
    event_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        event, inventory = service.get_event(event_id)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc
    return _event_response(event, inventory)


@router.post("/events/{event_id}/cancel", response_model=EventCancellationResponse)
def cancel_event(
    event_id: str,
    request: EventCancelRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        result = service.cancel_event(event_id, request.reason)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc

    return EventCancellationResponse(
        event_id=result.event_id,
        cancelled_bookings=[item.booking.id for item in result.cancelled],
        refunds_pending=[item.booking.id for item in result.cancelled if item.refund_pending],
        failed_bookings=result.failed,
    )


@router.put("/events/{event_id}/capacity", response_model=InventoryResponse)
def update_capacity(
    event_id: str,
    request: CapacityUpdateRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        inventory = service.update_capacity(event_id, request.capacity)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc
    return _inventory_response(inventory)


@router.post("/events/{event_id}/inventory/recalculate", response_model=InventoryResponse)
def recalculate_inventory(
    event_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        inventory = service.recalculate_inventory(event_id)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc
    return _inventory_response(inventory)


@router.post(
    "/events/{event_id}/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
def start_checkout(
    event_id: str,
    request: CheckoutRequest,
    service: BookingService = Depends(get_booking_service),
):
    payer = Payer(
        user_id=request.user_id,
        name=request.guest_name,
        email=request.guest_email,
        phone=request.guest_phone,
    )
    try:
        started = service.start_checkout(event_id, request.number_of_tickets, payer)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc
    return _checkout_response(started)


@router.get("/bookings/reference/{booking_reference}", response_model=BookingResponse)
def get_booking_by_reference(
    booking_reference: str,
    service: BookingService = Depends(get_booking_service),
):
    booking = service.find_booking_by_reference(booking_reference)
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Booking not found",
        )
    return _booking_response(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.get_booking(booking_id)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/checkout/retry", response_model=CheckoutResponse)
def retry_checkout(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        started = service.retry_checkout(booking_id)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc
    return _checkout_response(started)


@router.post("/bookings/{booking_id}/cancel", response_model=CancellationResponse)
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest,
    service: BookingService = Depends(get_booking_service),
):
    return _cancel(service, booking_id, CancellationInitiator.USER, request.reason)


# Skips the user deadline; mount behind the marketplace's staff auth.
@router.post("/staff/bookings/{booking_id}/cancel", response_model=CancellationResponse)
def staff_cancel_booking(
    booking_id: str,
    request: StaffCancelBookingRequest,
    service: BookingService = Depends(get_booking_service),
):
    return _cancel(service, booking_id, CancellationInitiator(request.initiator), request.reason)


def _cancel(
    service: BookingService,
    booking_id: str,
    initiator: CancellationInitiator,
    reason: str | None,
) -> CancellationResponse:
    try:
        result = service.cancel_booking(booking_id, initiator=initiator, reason=reason)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc

    return CancellationResponse(
        booking=_booking_response(result.booking),
        refund_pending=result.refund_pending,
        refund_reference=result.refund_reference,
    )



@router.post("/bookings/{booking_id}/confirm", response_model=ConfirmationResponse)
def confirm_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        result = service.confirm_manually(booking_id)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc

    return ConfirmationResponse(
        booking=_booking_response(result.booking),
        confirmed=result.confirmed,
    )


@router.post("/bookings/{booking_id}/refund/resolve", response_model=BookingResponse)
def resolve_refund(
    booking_id: str,
    request: ResolveRefundRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.resolve_manual_refund(booking_id, request.refund_reference)
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/payments/verify", response_model=ConfirmationResponse)
def verify_payment(
    request: VerifyCheckoutRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        result = service.verify_checkout_session(request.session_id)
    except (BookingLifecycleError, PaymentProcessorError) as exc:
        raise _http_error(exc) from exc

    return ConfirmationResponse(
        booking=_booking_response(result.booking),
        confirmed=result.confirmed,
        refund_issued=result.refund is not None and not result.refund.refund_pending,
    )


@router.post("/payments/webhook", response_model=WebhookResponse)
def payment_webhook(
    body: bytes = Depends(_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    service: BookingService = Depends(get_booking_service),
):
    try:
        result = service.handle_webhook(body, x_razorpay_signature, x_razorpay_event_id)
    except WebhookVerificationError as exc:
        logger.warning("Rejected payment webhook: %s", exc)
        raise _http_error(exc) from exc
    except BookingLifecycleError as exc:
        raise _http_error(exc) from exc

    return WebhookResponse(
        delivery_id=result.delivery_id,
        event_type=result.event_type,
        action=result.action,
        booking_id=result.booking_id,
    )


@router.post("/maintenance/pending/sweep", response_model=SweepResponse)
def sweep_stale_pending(
    request: SweepRequest,
    service: BookingService = Depends(get_booking_service),
):
    if request.older_than_minutes is None:
        aborted = service.abort_stale_pending()
    else:
        aborted = service.abort_stale_pending(timedelta(minutes=request.older_than_minutes))
    return SweepResponse(aborted=aborted)


@router.post("/maintenance/reminders", response_model=ReminderResponse)
def send_reminders(service: BookingService = Depends(get_booking_service)):
    return ReminderResponse(reminded=service.send_event_reminders())


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list_by_status(status_filter, safe_limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    repo = OutboxRepository(db)
    item = repo.get_by_id(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    repo.mark_published(item)
    return _outbox_response(item)
