"""
services/slots/allocator.py
SlotAllocator: materializes bookable slots from service definitions and owns
every change to a slot's capacity counter.

Every slot mutation is a compare-and-set on the slot version the caller
last read.
"""

import logging
import uuid
from datetime import date, timedelta
from typing import List, Optional

from config.settings import settings
from shared.exceptions import (
    CapacityExceededError,
    ConcurrentModificationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from shared.repositories.ports import ServiceRepository, SlotRepository
from shared.schemas.entities import (
    ServiceDefinition,
    ServiceSnapshot,
    SlotInstance,
    SlotStatus,
    walk_in_reserve,
)
from shared.utils.clock import Clock, business_now, weekday_number

logger = logging.getLogger(__name__)


class SlotAllocator:
    def __init__(self, services: ServiceRepository, slots: SlotRepository, now: Clock = business_now):
        self._services = services
        self._slots = slots
        self._now = now

    # ── Generation ────────────────────────────────────────────

    async def generate_slots(
        self, service_id: uuid.UUID, start_date: date, end_date: date
    ) -> List[SlotInstance]:
        """
        Create the slots of one service for every matching day in
        [start_date, end_date]. Returns only the slots created by this call.
        """
        if end_date < start_date:
            raise ValidationError(
                "end_date is before start_date",
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
            )
        service = await self._services.get(service_id)
        if not service:
            raise NotFoundError("Service not found", service_id=str(service_id))
        if not service.is_active:
            logger.info(f"Skipping slot generation for inactive service {service.id}")
            return []

        created: List[SlotInstance] = []
        day = start_date
        while day <= end_date:
            if weekday_number(day) in service.weekdays:
                created.extend(await self._materialize_day(service, day))
            day += timedelta(days=1)

        logger.info(
            f"Generated {len(created)} slots for {service.name} "
            f"between {start_date} and {end_date}"
        )
        return created

    async def _materialize_day(self, service: ServiceDefinition, day: date) -> List[SlotInstance]:
        created = []
        snapshot = ServiceSnapshot.of(service)
        reserved = walk_in_reserve(service.capacity, service.effective_reserved_percentage)
        for window in service.time_windows:
            if await self._slots.find(service.id, day, window.start_time, window.end_time):
                continue
            slot = SlotInstance(
                service_id=service.id,
                date=day,
                start_time=window.start_time,
                end_time=window.end_time,
                capacity=service.capacity,
                walk_in_reserved=reserved,
                override_allowed=service.is_priority,
                rules=snapshot,
                created_at=self._now(),
            )
            await self._slots.add(slot)
            created.append(slot)
        return created

    async def generate_horizon(self, start_date: date, days: Optional[int] = None) -> List[SlotInstance]:
        """Generate slots for every active service over a rolling horizon."""
        if days is None:
            days = settings.SLOT_HORIZON_DAYS
        if days < 1:
            raise ValidationError("Horizon must cover at least one day", days=days)
        end_date = start_date + timedelta(days=days - 1)
        created: List[SlotInstance] = []
        for service in await self._services.list_active():
            created.extend(await self.generate_slots(service.id, start_date, end_date))
        return created

    # ── Queries ───────────────────────────────────────────────

    async def get_slot(self, slot_id: uuid.UUID) -> SlotInstance:
        slot = await self._slots.get(slot_id)
        if not slot:
            raise NotFoundError("Slot not found", slot_id=str(slot_id))
        return slot

    async def list_slots(self, service_id: uuid.UUID, day: date) -> List[SlotInstance]:
        return await self._slots.list_for(service_id, day)

    async def list_available_slots(self, service_id: uuid.UUID, day: date) -> List[SlotInstance]:
        slots = await self._slots.list_for(service_id, day)
        return [s for s in slots if s.status not in (SlotStatus.FULL, SlotStatus.CLOSED)]

    # ── Mutations ─────────────────────────────────────────────

    async def consume_unit(self, slot_id: uuid.UUID, expected_version: int) -> SlotInstance:
        """Take one unit of capacity. The caller's version must still be current."""
        slot = await self.reserve_unit(slot_id, expected_version)
        return await self._slots.compare_and_set(slot, expected_version)

    async def reserve_unit(self, slot_id: uuid.UUID, expected_version: int) -> SlotInstance:
        """
        The slot as it looks with one more unit booked, checked against the
        caller's version and the capacity rules but not yet stored. The write
        is a compare-and-set on expected_version, done by the caller.
        """
        slot = await self.get_slot(slot_id)
        if slot.version != expected_version:
            raise ConcurrentModificationError(
                "Slot was modified by another request",
                expected_version=expected_version,
                current_version=slot.version,
                slot_id=str(slot_id),
            )
        if slot.is_closed:
            raise CapacityExceededError("Slot is closed", slot_id=str(slot_id))
        if slot.booked_count >= slot.capacity:
            raise CapacityExceededError(
                "Slot is full", slot_id=str(slot_id), capacity=slot.capacity
            )
        slot.booked_count += 1
        return slot

    async def close_slot(self, slot_id: uuid.UUID, user_id: str, reason: Optional[str] = None) -> SlotInstance:
        slot = await self.get_slot(slot_id)
        if slot.is_closed:
            raise InvalidStateError("Slot is already closed", slot_id=str(slot_id))
        expected = slot.version
        slot.is_closed = True
        slot.closed_by = user_id
        slot.closed_reason = reason
        stored = await self._slots.compare_and_set(slot, expected)
        logger.info(f"Slot {slot_id} closed by {user_id}: {reason}")
        return stored

    async def reopen_slot(self, slot_id: uuid.UUID, user_id: str) -> SlotInstance:
        slot = await self.get_slot(slot_id)
        if not slot.is_closed:
            raise InvalidStateError("Slot is not closed", slot_id=str(slot_id))
        expected = slot.version
        slot.is_closed = False
        slot.closed_by = None
        slot.closed_reason = None
        stored = await self._slots.compare_and_set(slot, expected)
        logger.info(f"Slot {slot_id} reopened by {user_id}")
        return stored
