from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from booking_lifecycle.infrastructure.db.models import Base, Event
from booking_lifecycle.infrastructure.db.session import SessionLocal, engine
from booking_lifecycle.infrastructure.repositories.event_repository import EventRepository
from booking_lifecycle.infrastructure.repositories.inventory_ledger import InventoryLedger


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    ist = timezone(timedelta(hours=5, minutes=30))
    now_ist = datetime.now(ist)
    target = now_ist + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0).astimezone(timezone.utc)


def seed_events(db) -> None:
    event_defs = [
        {
            "title": "Rooftop Supper Club",
            "host_id": "host-aarti",
            "date_time": _dt(days_from_now=10, hour=19, minute=30),
            "price_per_ticket": Decimal("1800.00"),
            "capacity": 24,
        },
        {
            "title": "Sourdough Baking Workshop",
            "host_id": "host-kabir",
            "date_time": _dt(days_from_now=3, hour=11, minute=0),
            "price_per_ticket": Decimal("1200.00"),
            "capacity": 12,
        },
        {
            "title": "Tomorrow's Tasting Menu",
            "host_id": "host-aarti",
            "date_time": _dt(days_from_now=1, hour=20, minute=0),
            "price_per_ticket": Decimal("3500.00"),
            "capacity": 8,
        },
    ]

    events = EventRepository(db)
    ledger = InventoryLedger(db)
    for item in event_defs:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            existing.host_id = item["host_id"]
            existing.date_time = item["date_time"]
            existing.price_per_ticket = item["price_per_ticket"]
            event = existing
        else:
            event = events.create(
                title=item["title"],
                host_id=item["host_id"],
                date_time=item["date_time"],
                price_per_ticket=item["price_per_ticket"],
            )

        ledger.create_or_reset(event.id, item["capacity"])


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_events(db)
        db.commit()
        print("Seed complete: supper club, baking workshop and tasting menu added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
