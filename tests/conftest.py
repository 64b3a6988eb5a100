# tests/conftest.py

import hashlib
import itertools
import json
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from booking_lifecycle.application.booking_service import BookingService
from booking_lifecycle.application.retry import RetryPolicy
from booking_lifecycle.domain.booking_intent import Payer
from booking_lifecycle.domain.cancellation_policy import CancellationPolicy
from booking_lifecycle.domain.exceptions import WebhookVerificationError
from booking_lifecycle.infrastructure.db.models import Base
from booking_lifecycle.infrastructure.db.session import build_engine, get_db
from booking_lifecycle.infrastructure.payments.gateway import (
    CheckoutSession,
    NotificationOutcome,
    PaymentNotification,
    PaymentProcessorError,
    SessionState,
    SessionStatus,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
VALID_SIGNATURE = "valid-signature"


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePaymentProcessor:
    """In-memory stand-in for the hosted checkout provider."""

    provider = "fake"

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.sessions: dict[str, dict] = {}
        self.sessions_by_key: dict[str, str] = {}
        self.create_calls: list[str] = []
        self.expired: list[str] = []
        self.refunds: list[dict] = []
        self.create_failures: list[Exception] = []
        self.expire_failures: list[Exception] = []
        self.refund_failures: list[Exception] = []

    def create_checkout_session(self, amount, currency, idempotency_key, description, metadata):
        with self._lock:
            self.create_calls.append(idempotency_key)
            if self.create_failures:
                raise self.create_failures.pop(0)
            if idempotency_key in self.sessions_by_key:
                session_id = self.sessions_by_key[idempotency_key]
            else:
                session_id = f"sess_{next(self._ids)}"
                self.sessions_by_key[idempotency_key] = session_id
                self.sessions[session_id] = {
                    "state": SessionState.OPEN,
                    "amount": amount,
                    "currency": currency,
                    "metadata": dict(metadata),
                    "payment_reference": None,
                }
            return CheckoutSession(
                session_id=session_id,
                checkout_url=f"https://pay.example.test/{session_id}",
            )

    def expire_checkout_session(self, session_id):
        with self._lock:
            if self.expire_failures:
                raise self.expire_failures.pop(0)
            self.expired.append(session_id)
            session = self.sessions.get(session_id)
            if session and session["state"] == SessionState.OPEN:
                session["state"] = SessionState.EXPIRED

    def fetch_session_status(self, session_id):
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise PaymentProcessorError(f"Unknown session {session_id}")
            return SessionStatus(
                session_id=session_id,
                state=session["state"],
                payment_reference=session["payment_reference"],
            )

    def refund(self, payment_reference, amount, currency, idempotency_key):
        with self._lock:
            if self.refund_failures:
                raise self.refund_failures.pop(0)
            refund_reference = f"rfnd_{next(self._ids)}"
            self.refunds.append(
                {
                    "payment_reference": payment_reference,
                    "amount": amount,
                    "currency": currency,
                    "idempotency_key": idempotency_key,
                    "refund_reference": refund_reference,
                }
            )
            return refund_reference

    def parse_webhook(self, body, signature, delivery_id):
        if signature != VALID_SIGNATURE:
            raise WebhookVerificationError("Invalid webhook signature")
        event_body = json.loads(body)
        outcomes = {
            "checkout.paid": NotificationOutcome.PAID,
            "checkout.expired": NotificationOutcome.FAILED,
        }
        payload_hash = hashlib.sha256(body).hexdigest()
        return PaymentNotification(
            delivery_id=delivery_id or payload_hash,
            event_type=event_body["event"],
            outcome=outcomes.get(event_body["event"], NotificationOutcome.IGNORED),
            payload_hash=payload_hash,
            session_id=event_body.get("session_id"),
            payment_reference=event_body.get("payment_reference"),
            booking_id=event_body.get("booking_id"),
        )

    # Test helpers

    def pay(self, session_id, payment_reference=None):
        """Simulate the customer completing checkout."""
        with self._lock:
            reference = payment_reference or f"pay_{next(self._ids)}"
            session = self.sessions[session_id]
            session["state"] = SessionState.PAID
            session["payment_reference"] = reference
            return reference


def webhook_body(event, session_id=None, payment_reference=None, booking_id=None) -> bytes:
    return json.dumps(
        {
            "event": event,
            "session_id": session_id,
            "payment_reference": payment_reference,
            "booking_id": booking_id,
        }
    ).encode("utf-8")


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(
        f"sqlite:///{tmp_path / 'bookings.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # Let SQLAlchemy drive transactions so SAVEPOINT works, and take the
    # write lock up front so concurrent writers queue instead of failing.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_service(session_factory, processor, clock, sleeps):
    sessions = []

    def _make(db: Session | None = None, **overrides) -> BookingService:
        if db is None:
            db = session_factory()
            sessions.append(db)
        options = {
            "clock": clock,
            "sleep": sleeps.append,
            "retry_policy": RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0),
            "cancellation_policy": CancellationPolicy(deadline_hours=48),
            "currency": "INR",
        }
        options.update(overrides)
        return BookingService(db, processor, **options)

    yield _make
    for session in sessions:
        session.close()


@pytest.fixture
def service(db, make_service):
    return make_service(db)


@pytest.fixture
def create_event(service, clock):
    def _create(capacity=10, price=Decimal("500.00"), starts_in=timedelta(days=7), title="Supper Club"):
        event, _ = service.create_event(
            title=title,
            host_id="host-1",
            date_time=clock() + starts_in,
            price_per_ticket=price,
            capacity=capacity,
        )
        event_id = event.id
        # Release the read transaction so other sessions can write.
        service.db.commit()
        return event_id

    return _create


@pytest.fixture
def client(session_factory, processor, clock, sleeps):
    from booking_lifecycle.api.routes.routes import get_booking_service
    from booking_lifecycle.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def override_get_booking_service(session: Session = Depends(get_db)):
        return BookingService(
            session,
            processor,
            clock=clock,
            sleep=sleeps.append,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0),
            cancellation_policy=CancellationPolicy(deadline_hours=48),
            currency="INR",
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_booking_service] = override_get_booking_service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_webhook_body():
    return webhook_body


@pytest.fixture
def guest():
    return Payer(name="Asha Rao", email="asha@example.com")


@pytest.fixture
def start_booking(service, guest):
    """Create a pending booking with an open checkout session."""

    def _start(event_id, tickets=1):
        started = service.start_checkout(event_id, tickets, guest)
        booking_id, session_id = started.booking.id, started.session_id
        service.db.commit()
        return booking_id, session_id

    return _start


@pytest.fixture
def confirmed_booking(service, processor, start_booking):
    """Create a booking, pay for it and confirm it through the webhook path."""

    def _confirm(event_id, tickets=1):
        booking_id, session_id = start_booking(event_id, tickets)
        payment_reference = processor.pay(session_id)
        service.reconciler.confirm(booking_id, payment_reference=payment_reference)
        service.db.commit()
        return booking_id, payment_reference

    return _confirm
