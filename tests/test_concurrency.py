"""
tests/test_concurrency.py
Concurrent counter terminals racing for the same slot or booking. The stores
yield to the event loop on every read so that requests genuinely interleave.
"""

import asyncio
from datetime import time

import pytest

from shared.dependencies import build_container
from shared.events import InMemoryEventBus
from shared.exceptions import CapacityExceededError, ConcurrentModificationError, InvalidStateError
from shared.repositories.memory import (
    InMemoryBookingRepository,
    InMemoryServiceRepository,
    InMemorySettlementRepository,
    InMemorySlotRepository,
)
from shared.schemas.entities import AuditAction, BookingStatus, BookingType, PaymentMode, WalkInPolicy
from tests.factories import TODAY, book, booking_options, devotee, paid, service_with_slot


class YieldingSlotRepository(InMemorySlotRepository):
    async def get(self, slot_id):
        await asyncio.sleep(0)
        return await super().get(slot_id)


class YieldingBookingRepository(InMemoryBookingRepository):
    async def get(self, booking_id):
        booking = await super().get(booking_id)
        await asyncio.sleep(0)
        return booking

    async def find(self, filters):
        bookings = await super().find(filters)
        await asyncio.sleep(0)
        return bookings


@pytest.fixture
def racing(clock):
    slots = YieldingSlotRepository()
    return build_container(
        services=InMemoryServiceRepository(),
        slots=slots,
        bookings=YieldingBookingRepository(slots),
        settlements=InMemorySettlementRepository(),
        events=InMemoryEventBus(),
        now=clock,
        retry_backoff=0,
    )


async def _gather(*calls):
    return await asyncio.gather(*calls, return_exceptions=True)


@pytest.mark.asyncio
async def test_two_creates_with_same_stale_version(racing):
    """capacity=1, walk-ins off: one booking wins, the other sees the version conflict."""
    _, slot = await service_with_slot(racing, capacity=1, walk_in=WalkInPolicy(allowed=False))

    results = await _gather(
        *[
            racing.ledger.create_booking(
                slot.id, devotee(), None, slot.version,
                **booking_options(BookingType.PRE_BOOKED, counter_id=f"counter{i}"),
            )
            for i in range(2)
        ]
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(results) - len(failures) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], ConcurrentModificationError)
    assert (await racing.allocator.get_slot(slot.id)).booked_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("capacity, callers", [(3, 8), (5, 12)])
async def test_parallel_callers_never_oversubscribe(racing, capacity, callers):
    _, slot = await service_with_slot(racing, capacity=capacity)

    results = await _gather(
        *[
            racing.ledger.create_booking_with_retry(
                slot.id, devotee(), None,
                attempts=callers + 1,
                **booking_options(BookingType.PRE_BOOKED),
            )
            for _ in range(callers)
        ]
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == capacity
    assert all(isinstance(f, (CapacityExceededError, ConcurrentModificationError)) for f in failures)

    stored = await racing.allocator.get_slot(slot.id)
    assert stored.booked_count == capacity
    assert sorted(b.receipt_sequence for b in successes) == list(range(1, capacity + 1))


@pytest.mark.asyncio
async def test_stale_callers_without_retry(racing):
    """Every caller presents version 1; only the first commit can succeed."""
    _, slot = await service_with_slot(racing, capacity=5)

    results = await _gather(
        *[
            racing.ledger.create_booking(
                slot.id, devotee(), None, 1, **booking_options(BookingType.PRE_BOOKED)
            )
            for _ in range(6)
        ]
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert all(isinstance(r, ConcurrentModificationError) for r in results if isinstance(r, Exception))
    assert (await racing.allocator.get_slot(slot.id)).booked_count == 1

    # losing callers took no receipt numbers
    follow_up = await book(racing, slot.id, booking_type=BookingType.PRE_BOOKED)
    assert follow_up.receipt_sequence == 2


@pytest.mark.asyncio
async def test_retry_recovers_from_a_single_conflict(racing):
    _, slot = await service_with_slot(racing, capacity=5)

    results = await _gather(
        *[
            racing.ledger.create_booking_with_retry(
                slot.id, devotee(), None, attempts=3, **booking_options(BookingType.PRE_BOOKED)
            )
            for _ in range(2)
        ]
    )

    assert not any(isinstance(r, Exception) for r in results)
    assert (await racing.allocator.get_slot(slot.id)).booked_count == 2


@pytest.mark.asyncio
async def test_complete_and_cancel_race_on_a_paid_booking(racing):
    """Both callers read COLLECTED; only the first terminal write lands."""
    _, slot = await service_with_slot(racing, capacity=5)
    booking = await book(racing, slot.id, payment=paid())

    results = await _gather(
        racing.ledger.complete_service(booking.id, "priest-1"),
        racing.ledger.cancel_booking(booking.id, "Family emergency", "op-2"),
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidStateError)

    stored = await racing.ledger.get_booking(booking.id)
    terminal = [e.action for e in stored.audit_log if e.action in (AuditAction.COMPLETED, AuditAction.CANCELLED)]
    assert len(terminal) == 1
    assert stored.status.value == terminal[0].value
    assert len(racing.events.of_type("COMPLETED")) + len(racing.events.of_type("CANCELLED")) == 1


@pytest.mark.asyncio
async def test_double_payment_is_recorded_once(racing):
    _, slot = await service_with_slot(racing, capacity=5)
    booking = await book(racing, slot.id)

    results = await _gather(
        racing.ledger.record_payment(booking.id, paid(), "op-1"),
        racing.ledger.record_payment(booking.id, paid("500", PaymentMode.UPI, "UPI-2"), "op-2"),
    )

    assert [type(r) for r in results].count(InvalidStateError) == 1
    stored = await racing.ledger.get_booking(booking.id)
    assert stored.status == BookingStatus.COLLECTED
    assert [e.action for e in stored.audit_log].count(AuditAction.PAYMENT_COLLECTED) == 1
    assert len(racing.events.of_type("COLLECTED")) == 1


@pytest.mark.asyncio
async def test_sweep_skips_a_booking_paid_mid_sweep(racing, clock):
    _, slot = await service_with_slot(racing, capacity=5)
    booking = await book(racing, slot.id)
    clock.set(TODAY, time(12, 0))

    paid_late, swept = await _gather(
        racing.ledger.record_payment(booking.id, paid(), "op-1"),
        racing.ledger.sweep_unpaid_no_shows(),
    )

    assert paid_late.status == BookingStatus.COLLECTED
    assert swept == []
    stored = await racing.ledger.get_booking(booking.id)
    assert AuditAction.NO_SHOW not in [e.action for e in stored.audit_log]
