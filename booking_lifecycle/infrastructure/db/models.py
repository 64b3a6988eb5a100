# booking_lifecycle/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Enum,
    Numeric,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from booking_lifecycle.infrastructure.db.session import Base
from booking_lifecycle.domain.state_machine import (
    BookingStatus,
    CancellationInitiator,
    ConfirmationSource,
    InventoryState,
    PaymentStatus,
)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def _status_enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=_enum_values)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    host_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price_per_ticket: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("price_per_ticket >= 0", name="ck_event_price_nonnegative"),
    )


class EventInventory(Base):
    """
    Remaining capacity per event.
    Only the inventory ledger writes spots_left.
    """

    __tablename__ = "event_inventory"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
        unique=True,
    )
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    spots_left: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_capacity_nonnegative"),
        CheckConstraint("spots_left >= 0", name="ck_spots_left_nonnegative"),
        CheckConstraint("spots_left <= capacity", name="ck_spots_left_lte_capacity"),
    )


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
        index=True,
    )
    booking_reference: Mapped[str] = mapped_column(String(16), nullable=False)

    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    guest_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    number_of_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_ticket: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        _status_enum(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _status_enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    inventory_state: Mapped[InventoryState] = mapped_column(
        _status_enum(InventoryState, "inventory_state"),
        nullable=False,
        default=InventoryState.UNADJUSTED,
    )

    processor_session_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    checkout_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    refund_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    confirmation_source: Mapped[ConfirmationSource | None] = mapped_column(
        _status_enum(ConfirmationSource, "confirmation_source"),
        nullable=True,
    )
    cancelled_by: Mapped[CancellationInitiator | None] = mapped_column(
        _status_enum(CancellationInitiator, "cancellation_initiator"),
        nullable=True,
    )
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "booking_reference",
            name="uq_booking_reference",
        ),
        CheckConstraint(
            "number_of_tickets > 0",
            name="ck_number_of_tickets_positive",
        ),
        CheckConstraint(
            "total_amount >= 0",
            name="ck_total_amount_nonnegative",
        ),
        CheckConstraint(
            "status <> 'confirmed' OR inventory_state = 'decremented'",
            name="ck_confirmed_holds_inventory",
        ),
    )

    @property
    def spots_decremented(self) -> bool:
        return self.inventory_state == InventoryState.DECREMENTED


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    delivery_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "delivery_id", name="uq_webhook_provider_delivery"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
