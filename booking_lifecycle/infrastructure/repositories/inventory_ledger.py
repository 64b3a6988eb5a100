# booking_lifecycle/infrastructure/repositories/inventory_ledger.py

import logging

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from booking_lifecycle.infrastructure.db.models import EventInventory
from booking_lifecycle.domain.exceptions import (
    CapacityExceeded,
    InventoryNotFoundError,
    InventoryOverflowError,
)

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Single source of truth for remaining event capacity.

    Every write is one guarded UPDATE, so concurrent adjustments on the
    same event serialize on the row and can never drive spots_left
    outside [0, capacity]. The ledger applies deltas unconditionally;
    callers de-duplicate through the booking's inventory_state.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_event_id(self, event_id: str) -> EventInventory | None:
        stmt = (
            select(EventInventory)
            .where(EventInventory.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get(self, event_id: str) -> EventInventory:
        inventory = self.get_by_event_id(event_id)
        if not inventory:
            raise InventoryNotFoundError(f"Inventory for event {event_id} not found")
        return inventory

    def create_or_reset(
        self,
        event_id: str,
        capacity: int,
    ) -> EventInventory:
        inventory = self.get_by_event_id(event_id)

        if inventory:
            inventory.capacity = capacity
            inventory.spots_left = capacity
            return inventory

        inventory = EventInventory(
            event_id=event_id,
            capacity=capacity,
            spots_left=capacity,
        )
        self.db.add(inventory)
        return inventory

    def adjust_spots(self, event_id: str, delta: int) -> int:
        """
        Atomically apply delta to spots_left and return the new value.

        Negative deltas consume spots, positive deltas restore them.
        """
        new_spots_left = EventInventory.spots_left + delta
        stmt = (
            update(EventInventory)
            .where(EventInventory.event_id == event_id)
            .where(new_spots_left >= 0)
            .where(new_spots_left <= EventInventory.capacity)
            .values(spots_left=new_spots_left)
            .returning(EventInventory.spots_left)
            .execution_options(synchronize_session=False)
        )
        spots_left = self.db.execute(stmt).scalar_one_or_none()

        if spots_left is not None:
            logger.debug(
                "Adjusted inventory. event_id=%s delta=%s spots_left=%s",
                event_id,
                delta,
                spots_left,
            )
            return spots_left

        inventory = self.get(event_id)
        if delta < 0:
            raise CapacityExceeded(
                event_id=event_id,
                requested=-delta,
                spots_left=inventory.spots_left,
            )
        raise InventoryOverflowError(
            f"Restoring {delta} spot(s) to event {event_id} would exceed "
            f"capacity {inventory.capacity} (spots_left={inventory.spots_left})"
        )

    def update_capacity(self, event_id: str, new_capacity: int) -> int:
        """
        Change capacity while keeping booked seats booked.
        spots_left moves by the same amount as capacity.
        """
        shift = new_capacity - EventInventory.capacity
        stmt = (
            update(EventInventory)
            .where(EventInventory.event_id == event_id)
            .where(EventInventory.spots_left + shift >= 0)
            .values(
                capacity=new_capacity,
                spots_left=EventInventory.spots_left + shift,
            )
            .returning(EventInventory.spots_left)
            .execution_options(synchronize_session=False)
        )
        spots_left = self.db.execute(stmt).scalar_one_or_none()
        if spots_left is not None:
            return spots_left

        inventory = self.get(event_id)
        booked = inventory.capacity - inventory.spots_left
        raise CapacityExceeded(event_id=event_id, requested=booked, spots_left=new_capacity)

    def recalculate(self, event_id: str, confirmed_tickets: int) -> int:
        """Reset spots_left from the confirmed bookings actually on record."""
        new_spots_left = EventInventory.capacity - confirmed_tickets
        stmt = (
            update(EventInventory)
            .where(EventInventory.event_id == event_id)
            .where(new_spots_left >= 0)
            .values(spots_left=new_spots_left)
            .returning(EventInventory.spots_left)
            .execution_options(synchronize_session=False)
        )
        spots_left = self.db.execute(stmt).scalar_one_or_none()
        if spots_left is not None:
            return spots_left

        inventory = self.get(event_id)
        raise CapacityExceeded(
            event_id=event_id,
            requested=confirmed_tickets,
            spots_left=inventory.capacity,
        )
