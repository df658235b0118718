"""
shared/repositories/ports.py
Narrow persistence contracts. Each engine component depends only on the
port it needs; memory.py and sql.py provide the implementations.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import date, time
from typing import Callable, List, Optional, Tuple

from shared.schemas.entities import (
    AuditEntry,
    Booking,
    BookingFilter,
    BookingStatus,
    CounterSettlement,
    ServiceDefinition,
    Shift,
    SlotInstance,
)


class ServiceRepository(ABC):
    @abstractmethod
    async def add(self, service: ServiceDefinition) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get(self, service_id: uuid.UUID) -> Optional[ServiceDefinition]:
        raise NotImplementedError

    @abstractmethod
    async def save(self, service: ServiceDefinition) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_active(self) -> List[ServiceDefinition]:
        raise NotImplementedError


class SlotRepository(ABC):
    @abstractmethod
    async def add(self, slot: SlotInstance) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get(self, slot_id: uuid.UUID) -> Optional[SlotInstance]:
        raise NotImplementedError

    @abstractmethod
    async def find(
        self, service_id: uuid.UUID, day: date, start_time: time, end_time: time
    ) -> Optional[SlotInstance]:
        raise NotImplementedError

    @abstractmethod
    async def list_for(self, service_id: uuid.UUID, day: date) -> List[SlotInstance]:
        raise NotImplementedError

    @abstractmethod
    async def compare_and_set(self, slot: SlotInstance, expected_version: int) -> SlotInstance:
        """
        Persist `slot` only if the stored version still equals expected_version.
        Returns the stored slot with version = expected_version + 1.
        Raises ConcurrentModificationError on mismatch.
        """
        raise NotImplementedError


class BookingRepository(ABC):
    @abstractmethod
    async def add_with_capacity(
        self,
        slot: SlotInstance,
        expected_version: int,
        counter_id: str,
        business_date: date,
        build: Callable[[int], Booking],
    ) -> Tuple[Booking, SlotInstance]:
        """
        One unit of work for a new booking: store `slot` (already holding the
        extra booked unit) if its version still equals expected_version,
        allocate the next receipt sequence for (counter_id, business_date),
        then insert `build(sequence)` with its audit entries.

        Either all three writes land or none do. Raises
        ConcurrentModificationError when the slot version moved.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, booking_id: uuid.UUID) -> Optional[Booking]:
        raise NotImplementedError

    @abstractmethod
    async def update(
        self, booking: Booking, *entries: AuditEntry, expected_status: BookingStatus
    ) -> None:
        """
        Persist mutable booking fields and append `entries` to its audit log,
        provided the stored status is still expected_status. Raises
        InvalidStateError otherwise, and nothing is written.
        Existing audit entries are never rewritten.
        """
        raise NotImplementedError

    @abstractmethod
    async def find(self, filters: BookingFilter) -> List[Booking]:
        raise NotImplementedError


class ShiftLockIndex(ABC):
    @abstractmethod
    async def is_locked(self, counter_id: str, day: date, shift: Shift) -> bool:
        raise NotImplementedError


class SettlementRepository(ShiftLockIndex):
    @abstractmethod
    async def add(self, settlement: CounterSettlement) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get(self, settlement_id: uuid.UUID) -> Optional[CounterSettlement]:
        raise NotImplementedError

    @abstractmethod
    async def save(self, settlement: CounterSettlement) -> None:
        raise NotImplementedError

    @abstractmethod
    async def find_for_shift(
        self, counter_id: str, day: date, shift: Shift
    ) -> Optional[CounterSettlement]:
        raise NotImplementedError
