"""
shared/repositories/sql.py
Async SQLAlchemy implementations of the repository ports.

Every method opens its own session from the injected factory and commits
on exit. Slot capacity changes go through a version-conditioned UPDATE;
receipt sequences through UPDATE ... RETURNING on a per-(counter, date) row.
A new booking takes its slot unit, receipt sequence and row in one transaction.
"""

import logging
import uuid
from collections import defaultdict
from datetime import date, time
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import session_scope
from shared.exceptions import ConcurrentModificationError, InvalidStateError, NotFoundError
from shared.models.models import (
    BookingAuditLog,
    ReceiptSequence,
    SettlementRecord,
    SevaBooking,
    SevaService,
    SevaSlot,
)
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
    SettlementStatus,
    Shift,
    SlotInstance,
)

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _columns(row) -> dict:
    return {col.name: getattr(row, col.name) for col in row.__table__.columns}


# ── Mappers ───────────────────────────────────────────────────

def _service_values(service: ServiceDefinition) -> dict:
    values = {
        "id": service.id,
        "name": service.name,
        "name_local": service.name_local,
        "category": service.category,
        "price": service.price,
        "duration_minutes": service.duration_minutes,
        "capacity": service.capacity,
        "weekdays": list(service.weekdays),
        "time_windows": [w.model_dump(mode="json") for w in service.time_windows],
        "min_devotees": service.min_devotees,
        "max_devotees": service.max_devotees,
        "requires_identity_attribute": service.requires_identity_attribute,
        "advance_booking": service.advance_booking.model_dump(mode="json"),
        "walk_in": service.walk_in.model_dump(mode="json"),
        "is_active": service.is_active,
        "is_priority": service.is_priority,
        "description": service.description,
    }
    if service.created_at:
        values["created_at"] = service.created_at
    if service.updated_at:
        values["updated_at"] = service.updated_at
    return values


def _slot_values(slot: SlotInstance) -> dict:
    values = {
        "id": slot.id,
        "service_id": slot.service_id,
        "date": slot.date,
        "start_time": slot.start_time,
        "end_time": slot.end_time,
        "capacity": slot.capacity,
        "booked_count": slot.booked_count,
        "walk_in_reserved": slot.walk_in_reserved,
        "version": slot.version,
        "override_allowed": slot.override_allowed,
        "is_closed": slot.is_closed,
        "closed_by": slot.closed_by,
        "closed_reason": slot.closed_reason,
        "rules": slot.rules.model_dump(mode="json"),
    }
    if slot.created_at:
        values["created_at"] = slot.created_at
    return values


def _booking_values(booking: Booking) -> dict:
    payment = booking.payment
    return {
        "id": booking.id,
        "receipt_number": booking.receipt_number,
        "receipt_sequence": booking.receipt_sequence,
        "slot_id": booking.slot_id,
        "service_id": booking.service.service_id,
        "category": booking.service.category,
        "service": booking.service.model_dump(mode="json"),
        "devotee": booking.devotee.model_dump(mode="json"),
        "devotee_name": booking.devotee.name,
        "devotee_phone": booking.devotee.phone,
        "amount": payment.amount,
        "payment_mode": payment.mode,
        "cash_amount": payment.cash_amount,
        "digital_amount": payment.digital_amount,
        "transaction_id": payment.transaction_id,
        "payment_status": payment.status,
        "collected_by": payment.collected_by,
        "collected_at": payment.collected_at,
        "status": booking.status,
        "booking_type": booking.booking_type,
        "counter_id": booking.counter_id,
        "counter_name": booking.counter_name,
        "business_date": booking.business_date,
        "shift": booking.shift,
        "created_by": booking.created_by,
        "created_at": booking.created_at,
        "updated_at": booking.updated_at,
        "cancellation_reason": booking.cancellation_reason,
        "cancelled_by": booking.cancelled_by,
        "cancelled_at": booking.cancelled_at,
        "no_show_reason": booking.no_show_reason,
        "no_show_marked_by": booking.no_show_marked_by,
        "no_show_marked_at": booking.no_show_marked_at,
        "reprint_count": booking.reprint_count,
    }


def _to_booking(row: SevaBooking, entries: List[BookingAuditLog]) -> Booking:
    data = _columns(row)
    data["payment"] = {
        "amount": row.amount,
        "mode": row.payment_mode,
        "cash_amount": row.cash_amount,
        "digital_amount": row.digital_amount,
        "transaction_id": row.transaction_id,
        "status": row.payment_status,
        "collected_by": row.collected_by,
        "collected_at": row.collected_at,
    }
    data["audit_log"] = [_columns(e) for e in entries]
    return Booking.model_validate(data)


def _audit_row(booking_id: uuid.UUID, entry: AuditEntry) -> BookingAuditLog:
    return BookingAuditLog(
        booking_id=booking_id,
        timestamp=entry.timestamp,
        action=entry.action,
        user_id=entry.user_id,
        reason=entry.reason,
        details=entry.details,
    )


def _settlement_values(settlement: CounterSettlement) -> dict:
    return settlement.model_dump()


# ── Repositories ──────────────────────────────────────────────

# ── Shared statements ─────────────────────────────────────────

async def _write_slot(session: AsyncSession, slot: SlotInstance, expected_version: int) -> SlotInstance:
    values = _slot_values(slot)
    values.pop("id")
    values.pop("created_at", None)
    values["version"] = expected_version + 1
    result = await session.execute(
        update(SevaSlot)
        .where(SevaSlot.id == slot.id, SevaSlot.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = await session.scalar(select(SevaSlot.version).where(SevaSlot.id == slot.id))
        raise ConcurrentModificationError(
            "Slot was modified by another request",
            expected_version=expected_version,
            current_version=current,
            slot_id=str(slot.id),
        )
    return slot.model_copy(update={"version": expected_version + 1})


async def _take_sequence(session: AsyncSession, counter_id: str, business_date: date) -> int:
    value = (
        await session.execute(
            update(ReceiptSequence)
            .where(
                ReceiptSequence.counter_id == counter_id,
                ReceiptSequence.business_date == business_date,
            )
            .values(last_value=ReceiptSequence.last_value + 1)
            .returning(ReceiptSequence.last_value)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()
    if value is None:
        session.add(ReceiptSequence(counter_id=counter_id, business_date=business_date, last_value=1))
        await session.flush()
        value = 1
    return value


class SqlServiceRepository(ServiceRepository):
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def add(self, service: ServiceDefinition) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(SevaService(**_service_values(service)))

    async def get(self, service_id: uuid.UUID) -> Optional[ServiceDefinition]:
        async with self._session_factory() as session:
            row = await session.get(SevaService, service_id)
            return ServiceDefinition.model_validate(_columns(row)) if row else None

    async def save(self, service: ServiceDefinition) -> None:
        values = _service_values(service)
        values.pop("id")
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(SevaService)
                .where(SevaService.id == service.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def list_active(self) -> List[ServiceDefinition]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SevaService).where(SevaService.is_active.is_(True)).order_by(SevaService.name)
            )
            return [ServiceDefinition.model_validate(_columns(r)) for r in result.scalars().all()]


class SqlSlotRepository(SlotRepository):
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def add(self, slot: SlotInstance) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(SevaSlot(**_slot_values(slot)))

    async def get(self, slot_id: uuid.UUID) -> Optional[SlotInstance]:
        async with self._session_factory() as session:
            row = await session.get(SevaSlot, slot_id)
            return SlotInstance.model_validate(_columns(row)) if row else None

    async def find(
        self, service_id: uuid.UUID, day: date, start_time: time, end_time: time
    ) -> Optional[SlotInstance]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SevaSlot).where(
                    SevaSlot.service_id == service_id,
                    SevaSlot.date == day,
                    SevaSlot.start_time == start_time,
                    SevaSlot.end_time == end_time,
                )
            )
            row = result.scalar_one_or_none()
            return SlotInstance.model_validate(_columns(row)) if row else None

    async def list_for(self, service_id: uuid.UUID, day: date) -> List[SlotInstance]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SevaSlot)
                .where(SevaSlot.service_id == service_id, SevaSlot.date == day)
                .order_by(SevaSlot.start_time)
            )
            return [SlotInstance.model_validate(_columns(r)) for r in result.scalars().all()]

    async def compare_and_set(self, slot: SlotInstance, expected_version: int) -> SlotInstance:
        async with session_scope(self._session_factory) as session:
            return await _write_slot(session, slot, expected_version)


class SqlBookingRepository(BookingRepository):
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def _audit_for(self, session: AsyncSession, booking_ids: List[uuid.UUID]) -> Dict[uuid.UUID, list]:
        grouped: Dict[uuid.UUID, list] = defaultdict(list)
        if not booking_ids:
            return grouped
        result = await session.execute(
            select(BookingAuditLog)
            .where(BookingAuditLog.booking_id.in_(booking_ids))
            .order_by(BookingAuditLog.id)
        )
        for entry in result.scalars().all():
            grouped[entry.booking_id].append(entry)
        return grouped

    async def _insert(self, session: AsyncSession, booking: Booking) -> None:
        session.add(SevaBooking(**_booking_values(booking)))
        await session.flush()
        session.add_all([_audit_row(booking.id, e) for e in booking.audit_log])

    async def add_with_capacity(
        self,
        slot: SlotInstance,
        expected_version: int,
        counter_id: str,
        business_date: date,
        build: Callable[[int], Booking],
    ) -> Tuple[Booking, SlotInstance]:
        for attempt in range(2):
            try:
                async with session_scope(self._session_factory) as session:
                    stored = await _write_slot(session, slot, expected_version)
                    booking = build(await _take_sequence(session, counter_id, business_date))
                    await self._insert(session, booking)
                return booking, stored
            except IntegrityError:
                # Another terminal created the sequence row first; the whole unit is replayed.
                if attempt:
                    raise
                logger.info(f"Receipt sequence row race for {counter_id}/{business_date}, retrying")

    async def get(self, booking_id: uuid.UUID) -> Optional[Booking]:
        async with self._session_factory() as session:
            row = await session.get(SevaBooking, booking_id)
            if not row:
                return None
            audit = await self._audit_for(session, [row.id])
            return _to_booking(row, audit[row.id])

    async def update(
        self, booking: Booking, *entries: AuditEntry, expected_status: BookingStatus
    ) -> None:
        values = _booking_values(booking)
        values.pop("id")
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(SevaBooking)
                .where(SevaBooking.id == booking.id, SevaBooking.status == expected_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.scalar(select(SevaBooking.status).where(SevaBooking.id == booking.id))
                if current is None:
                    raise NotFoundError("Booking not found", booking_id=str(booking.id))
                raise InvalidStateError(
                    f"Booking moved to {current.value} since it was read",
                    booking_id=str(booking.id),
                    status=current.value,
                    expected_status=expected_status.value,
                )
            session.add_all([_audit_row(booking.id, e) for e in entries])

    async def find(self, filters: BookingFilter) -> List[Booking]:
        query = select(SevaBooking)
        if filters.counter_id:
            query = query.where(SevaBooking.counter_id == filters.counter_id)
        if filters.business_date:
            query = query.where(SevaBooking.business_date == filters.business_date)
        if filters.date_from:
            query = query.where(SevaBooking.business_date >= filters.date_from)
        if filters.date_to:
            query = query.where(SevaBooking.business_date <= filters.date_to)
        if filters.shift:
            query = query.where(SevaBooking.shift == filters.shift)
        if filters.status:
            query = query.where(SevaBooking.status == filters.status)
        if filters.booking_type:
            query = query.where(SevaBooking.booking_type == filters.booking_type)
        if filters.payment_mode:
            query = query.where(SevaBooking.payment_mode == filters.payment_mode)
        if filters.category:
            query = query.where(SevaBooking.category == filters.category)
        if filters.service_id:
            query = query.where(SevaBooking.service_id == filters.service_id)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.where(
                or_(
                    SevaBooking.devotee_name.ilike(pattern),
                    SevaBooking.devotee_phone.like(pattern),
                    SevaBooking.receipt_number.ilike(pattern),
                )
            )
        query = query.order_by(
            SevaBooking.business_date, SevaBooking.counter_id, SevaBooking.receipt_sequence
        )

        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            audit = await self._audit_for(session, [r.id for r in rows])
            return [_to_booking(r, audit[r.id]) for r in rows]


class SqlSettlementRepository(SettlementRepository):
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def add(self, settlement: CounterSettlement) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(SettlementRecord(**_settlement_values(settlement)))

    async def get(self, settlement_id: uuid.UUID) -> Optional[CounterSettlement]:
        async with self._session_factory() as session:
            row = await session.get(SettlementRecord, settlement_id)
            return CounterSettlement.model_validate(_columns(row)) if row else None

    async def save(self, settlement: CounterSettlement) -> None:
        values = _settlement_values(settlement)
        values.pop("id")
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(SettlementRecord)
                .where(SettlementRecord.id == settlement.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def find_for_shift(
        self, counter_id: str, day: date, shift: Shift
    ) -> Optional[CounterSettlement]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SettlementRecord).where(
                    SettlementRecord.counter_id == counter_id,
                    SettlementRecord.date == day,
                    SettlementRecord.shift == shift,
                )
            )
            row = result.scalar_one_or_none()
            return CounterSettlement.model_validate(_columns(row)) if row else None

    async def is_locked(self, counter_id: str, day: date, shift: Shift) -> bool:
        async with self._session_factory() as session:
            locked = await session.scalar(
                select(SettlementRecord.is_locked).where(
                    SettlementRecord.counter_id == counter_id,
                    SettlementRecord.date == day,
                    SettlementRecord.shift == shift,
                    SettlementRecord.status == SettlementStatus.LOCKED,
                )
            )
            return bool(locked)
