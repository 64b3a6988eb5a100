# booking_lifecycle/infrastructure/repositories/event_repository.py

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import select

from booking_lifecycle.infrastructure.db.models import Event
from booking_lifecycle.domain.exceptions import EventNotFoundError

EVENT_ACTIVE = "active"
EVENT_CANCELLED = "cancelled"


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Event | None:
        return self.db.execute(
            select(Event).where(Event.id == event_id)
        ).scalar_one_or_none()

    def get(self, event_id: str) -> Event:
        event = self.get_by_id(event_id)
        if not event:
            raise EventNotFoundError(event_id)
        return event

    def create(
        self,
        title: str,
        host_id: str,
        date_time: datetime,
        price_per_ticket: Decimal,
    ) -> Event:
        event = Event(
            title=title,
            host_id=host_id,
            date_time=date_time,
            price_per_ticket=price_per_ticket,
            status=EVENT_ACTIVE,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def mark_cancelled(self, event: Event) -> Event:
        event.status = EVENT_CANCELLED
        self.db.flush()
        return event

    def list_starting_between(self, start: datetime, end: datetime) -> list[Event]:
        stmt = (
            select(Event)
            .where(Event.status == EVENT_ACTIVE)
            .where(Event.date_time >= start)
            .where(Event.date_time < end)
            .order_by(Event.date_time)
        )
        return list(self.db.execute(stmt).scalars().all())
