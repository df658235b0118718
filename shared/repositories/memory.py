"""
shared/repositories/memory.py
In-process implementations of the repository ports. Used by tests and by
STORE_BACKEND=memory. Entities are copied on the way in and out so callers
never share mutable state with the store.

Each method body runs without suspending, so a read-check-write inside one
call is atomic on the event loop.
"""

import uuid
from datetime import date, time
from typing import Callable, Dict, List, Optional, Tuple

from shared.exceptions import ConcurrentModificationError, InvalidStateError, NotFoundError
from shared.repositories.ports import (
    BookingRepository,
    ServiceRepository,
    SettlementRepository,
    SlotRepository,
)
from shared.schemas.entities import (
    AuditEntry,
    Booking,
    BookingFilter,
    BookingStatus,
    CounterSettlement,
    ServiceDefinition,
    Shift,
    SettlementStatus,
    SlotInstance,
)


class InMemoryServiceRepository(ServiceRepository):
    def __init__(self) -> None:
        self._services: Dict[uuid.UUID, ServiceDefinition] = {}

    async def add(self, service: ServiceDefinition) -> None:
        self._services[service.id] = service.model_copy(deep=True)

    async def get(self, service_id: uuid.UUID) -> Optional[ServiceDefinition]:
        service = self._services.get(service_id)
        return service.model_copy(deep=True) if service else None

    async def save(self, service: ServiceDefinition) -> None:
        self._services[service.id] = service.model_copy(deep=True)

    async def list_active(self) -> List[ServiceDefinition]:
        return [s.model_copy(deep=True) for s in self._services.values() if s.is_active]


class InMemorySlotRepository(SlotRepository):
    def __init__(self) -> None:
        self._slots: Dict[uuid.UUID, SlotInstance] = {}
        self._index: Dict[Tuple[uuid.UUID, date, time, time], uuid.UUID] = {}

    async def add(self, slot: SlotInstance) -> None:
        key = (slot.service_id, slot.date, slot.start_time, slot.end_time)
        if key in self._index:
            raise ValueError(f"Slot already materialized for {key}")
        self._slots[slot.id] = slot.model_copy(deep=True)
        self._index[key] = slot.id

    async def get(self, slot_id: uuid.UUID) -> Optional[SlotInstance]:
        slot = self._slots.get(slot_id)
        return slot.model_copy(deep=True) if slot else None

    async def find(
        self, service_id: uuid.UUID, day: date, start_time: time, end_time: time
    ) -> Optional[SlotInstance]:
        slot_id = self._index.get((service_id, day, start_time, end_time))
        return await self.get(slot_id) if slot_id else None

    async def list_for(self, service_id: uuid.UUID, day: date) -> List[SlotInstance]:
        slots = [
            s.model_copy(deep=True)
            for s in self._slots.values()
            if s.service_id == service_id and s.date == day
        ]
        return sorted(slots, key=lambda s: s.start_time)

    async def compare_and_set(self, slot: SlotInstance, expected_version: int) -> SlotInstance:
        current = self._slots.get(slot.id)
        if current is None or current.version != expected_version:
            raise ConcurrentModificationError(
                "Slot was modified by another request",
                expected_version=expected_version,
                current_version=current.version if current else None,
                slot_id=str(slot.id),
            )
        stored = slot.model_copy(update={"version": expected_version + 1}, deep=True)
        self._slots[slot.id] = stored
        return stored.model_copy(deep=True)


class InMemoryBookingRepository(BookingRepository):
    def __init__(self, slots: InMemorySlotRepository) -> None:
        self._slots = slots
        self._bookings: Dict[uuid.UUID, Booking] = {}
        self._audit: Dict[uuid.UUID, List[AuditEntry]] = {}
        self._sequences: Dict[Tuple[str, date], int] = {}

    def _hydrate(self, booking_id: uuid.UUID) -> Booking:
        booking = self._bookings[booking_id].model_copy(deep=True)
        booking.audit_log = [e.model_copy(deep=True) for e in self._audit[booking_id]]
        return booking

    async def add_with_capacity(
        self,
        slot: SlotInstance,
        expected_version: int,
        counter_id: str,
        business_date: date,
        build: Callable[[int], Booking],
    ) -> Tuple[Booking, SlotInstance]:
        # The sequence is only taken once the slot write has gone through.
        sequence = self._sequences.get((counter_id, business_date), 0) + 1
        booking = build(sequence)
        if booking.id in self._bookings:
            raise ValueError(f"Booking {booking.id} already exists")
        stored = await self._slots.compare_and_set(slot, expected_version)
        self._sequences[(counter_id, business_date)] = sequence
        self._bookings[booking.id] = booking.model_copy(update={"audit_log": []}, deep=True)
        self._audit[booking.id] = [e.model_copy(deep=True) for e in booking.audit_log]
        return booking, stored

    async def get(self, booking_id: uuid.UUID) -> Optional[Booking]:
        if booking_id not in self._bookings:
            return None
        return self._hydrate(booking_id)

    async def update(
        self, booking: Booking, *entries: AuditEntry, expected_status: BookingStatus
    ) -> None:
        if booking.id not in self._bookings:
            raise NotFoundError("Booking not found", booking_id=str(booking.id))
        current = self._bookings[booking.id].status
        if current != expected_status:
            raise InvalidStateError(
                f"Booking moved to {current.value} since it was read",
                booking_id=str(booking.id),
                status=current.value,
                expected_status=expected_status.value,
            )
        self._bookings[booking.id] = booking.model_copy(update={"audit_log": []}, deep=True)
        self._audit[booking.id].extend(e.model_copy(deep=True) for e in entries)

    async def find(self, filters: BookingFilter) -> List[Booking]:
        matches = [
            self._hydrate(booking_id)
            for booking_id, booking in self._bookings.items()
            if filters.matches(booking)
        ]
        return sorted(matches, key=lambda b: (b.business_date, b.counter_id, b.receipt_sequence))


class InMemorySettlementRepository(SettlementRepository):
    def __init__(self) -> None:
        self._settlements: Dict[uuid.UUID, CounterSettlement] = {}

    async def add(self, settlement: CounterSettlement) -> None:
        if await self.find_for_shift(settlement.counter_id, settlement.date, settlement.shift):
            raise ValueError("Settlement already exists for this counter shift")
        self._settlements[settlement.id] = settlement.model_copy(deep=True)

    async def get(self, settlement_id: uuid.UUID) -> Optional[CounterSettlement]:
        settlement = self._settlements.get(settlement_id)
        return settlement.model_copy(deep=True) if settlement else None

    async def save(self, settlement: CounterSettlement) -> None:
        self._settlements[settlement.id] = settlement.model_copy(deep=True)

    async def find_for_shift(
        self, counter_id: str, day: date, shift: Shift
    ) -> Optional[CounterSettlement]:
        for settlement in self._settlements.values():
            if (settlement.counter_id, settlement.date, settlement.shift) == (counter_id, day, shift):
                return settlement.model_copy(deep=True)
        return None

    async def is_locked(self, counter_id: str, day: date, shift: Shift) -> bool:
        settlement = await self.find_for_shift(counter_id, day, shift)
        return bool(settlement and settlement.is_locked and settlement.status == SettlementStatus.LOCKED)
