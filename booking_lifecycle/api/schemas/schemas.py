from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class EventCreate(BaseModel):
    title: str = Field(min_length=1, max_length=128)
    host_id: str
    date_time: datetime
    price_per_ticket: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    capacity: int = Field(ge=0)


class EventResponse(BaseModel):
    id: str
    title: str
    host_id: str
    date_time: str
    price_per_ticket: str
    status: str
    capacity: int
    spots_left: int
    booked_spots: int


class CapacityUpdateRequest(BaseModel):
    capacity: int = Field(ge=0)


class InventoryResponse(BaseModel):
    event_id: str
    capacity: int
    spots_left: int
    booked_spots: int


class EventCancelRequest(BaseModel):
    reason: str | None = None


class EventCancellationResponse(BaseModel):
    event_id: str
    cancelled_bookings: list[str]
    refunds_pending: list[str]
    failed_bookings: dict[str, str]


class CheckoutRequest(BaseModel):
    number_of_tickets: int
    user_id: str | None = None
    guest_name: str | None = None
    guest_email: str | None = None
    guest_phone: str | None = None


class CheckoutResponse(BaseModel):
    booking_id: str
    booking_reference: str
    status: str
    checkout_url: str
    session_id: str
    checkout_attempts: int


class BookingResponse(BaseModel):
    booking_id: str
    booking_reference: str
    event_id: str
    status: str
    payment_status: str
    inventory_state: str
    number_of_tickets: int
    total_amount: str
    currency: str
    checkout_attempts: int
    confirmation_source: str | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    refund_reference: str | None = None


class CancelBookingRequest(BaseModel):
    reason: str | None = None


class StaffCancelBookingRequest(BaseModel):
    initiator: Literal["host", "admin"] = "host"
    reason: str | None = None


class CancellationResponse(BaseModel):
    booking: BookingResponse
    refund_pending: bool
    refund_reference: str | None = None


class ConfirmationResponse(BaseModel):
    booking: BookingResponse
    confirmed: bool
    refund_issued: bool = False


class ResolveRefundRequest(BaseModel):
    refund_reference: str = Field(min_length=1)


class VerifyCheckoutRequest(BaseModel):
    session_id: str


class WebhookResponse(BaseModel):
    delivery_id: str
    event_type: str
    action: str
    booking_id: str | None = None


class SweepRequest(BaseModel):
    older_than_minutes: int | None = Field(default=None, gt=0)


class SweepResponse(BaseModel):
    aborted: int


class ReminderResponse(BaseModel):
    reminded: int


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str
