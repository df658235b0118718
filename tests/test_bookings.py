"""
tests/test_bookings.py
Tests for the booking lifecycle:
create → payment → complete, with cancellation, no-show and reprint paths,
eligibility rules, walk-in reserve and receipt numbering.
"""

import uuid
from datetime import date, time, timedelta
from decimal import Decimal

import pytest

from shared.exceptions import (
    CapacityExceededError,
    ConcurrentModificationError,
    EligibilityError,
    InvalidStateError,
    NotFoundError,
    SettlementLockedError,
    ValidationError,
)
from shared.schemas.entities import (
    AdvanceBookingPolicy,
    AuditAction,
    BookingFilter,
    BookingStatus,
    BookingType,
    PaymentMode,
    PaymentStatus,
    Shift,
    SlotStatus,
    WalkInPolicy,
)
from tests.factories import (
    TODAY,
    book,
    booking_options,
    devotee,
    make_service,
    paid,
    service_with_slot,
    window,
)


def actions(booking):
    return [entry.action for entry in booking.audit_log]


# ── Creation ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_pending_booking(container, clock):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id)

    assert booking.status == BookingStatus.PENDING
    assert booking.payment.status == PaymentStatus.PENDING
    assert booking.payment.amount == Decimal("500")
    assert booking.receipt_number == "COUNTER1-20250114-000001"
    assert booking.business_date == TODAY
    assert booking.shift == Shift.MORNING
    assert booking.service.name == "Archana"
    assert actions(booking) == [AuditAction.CREATED]

    stored_slot = await container.allocator.get_slot(slot.id)
    assert stored_slot.booked_count == 1
    assert stored_slot.version == 2
    assert [e.type for e in container.events.events] == ["CREATED"]


@pytest.mark.asyncio
async def test_create_with_payment_collects_immediately(container):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id, payment=paid("500", PaymentMode.UPI, "UPI-1"))

    assert booking.status == BookingStatus.COLLECTED
    assert booking.payment.status == PaymentStatus.COLLECTED
    assert booking.payment.digital_amount == Decimal("500")
    assert booking.payment.cash_amount == Decimal("0")
    assert booking.payment.collected_by == "op-1"
    assert actions(booking) == [AuditAction.CREATED, AuditAction.PAYMENT_COLLECTED]
    assert [e.type for e in container.events.events] == ["CREATED", "COLLECTED"]


@pytest.mark.asyncio
async def test_party_size_bounds_enforced(container):
    _, slot = await service_with_slot(container, min_devotees=2, max_devotees=4)
    with pytest.raises(EligibilityError):
        await book(container, slot.id, who=devotee(party_size=1))
    with pytest.raises(EligibilityError):
        await book(container, slot.id, who=devotee(party_size=5))

    accepted = await book(container, slot.id, who=devotee(party_size=4))
    assert accepted.devotee.party_size == 4
    # one unit per booking, whatever the party size
    assert (await container.allocator.get_slot(slot.id)).booked_count == 1


@pytest.mark.asyncio
async def test_identity_attribute_required(container):
    _, slot = await service_with_slot(container, requires_identity_attribute=True)
    with pytest.raises(EligibilityError):
        await book(container, slot.id, who=devotee(identity_attribute="  "))
    booking = await book(container, slot.id, who=devotee(identity_attribute="Kashyapa"))
    assert booking.devotee.identity_attribute == "Kashyapa"


@pytest.mark.asyncio
async def test_walk_in_refused_when_walk_ins_disallowed(container):
    _, slot = await service_with_slot(container, walk_in=WalkInPolicy(allowed=False))
    with pytest.raises(EligibilityError):
        await book(container, slot.id, booking_type=BookingType.WALK_IN)
    assert (await container.allocator.get_slot(slot.id)).booked_count == 0

    pre_booked = await book(container, slot.id, booking_type=BookingType.PRE_BOOKED)
    assert pre_booked.booking_type == BookingType.PRE_BOOKED


@pytest.mark.asyncio
async def test_walk_in_only_for_todays_slots(container):
    service = await container.catalog.create_service(make_service())
    [tomorrow] = await container.allocator.generate_slots(
        service.id, TODAY + timedelta(days=1), TODAY + timedelta(days=1)
    )
    with pytest.raises(EligibilityError):
        await book(container, tomorrow.id, booking_type=BookingType.WALK_IN)


@pytest.mark.asyncio
async def test_advance_booking_policy(container):
    service = await container.catalog.create_service(
        make_service(advance_booking=AdvanceBookingPolicy(required=True, days_ahead=3))
    )
    slots = await container.allocator.generate_slots(service.id, TODAY, TODAY + timedelta(days=5))
    by_date = {s.date: s for s in slots}

    with pytest.raises(EligibilityError):
        await book(container, by_date[TODAY].id, booking_type=BookingType.PRE_BOOKED)
    with pytest.raises(EligibilityError):
        await book(container, by_date[TODAY + timedelta(days=5)].id, booking_type=BookingType.PRE_BOOKED)

    booking = await book(container, by_date[TODAY + timedelta(days=3)].id, booking_type=BookingType.PRE_BOOKED)
    assert booking.service.date == TODAY + timedelta(days=3)


@pytest.mark.asyncio
async def test_cannot_book_ended_slot(container, clock):
    _, slot = await service_with_slot(container)
    clock.set(TODAY, time(11, 0))
    with pytest.raises(ValidationError):
        await book(container, slot.id, booking_type=BookingType.PRE_BOOKED)


@pytest.mark.asyncio
async def test_stale_version_rejected_before_anything_else(container):
    _, slot = await service_with_slot(container)
    await book(container, slot.id)
    with pytest.raises(ConcurrentModificationError) as excinfo:
        await container.ledger.create_booking(slot.id, devotee(), None, 1, **booking_options())
    assert excinfo.value.current_version == 2


@pytest.mark.asyncio
async def test_full_and_closed_slots_refuse_bookings(container):
    _, slot = await service_with_slot(container, capacity=1)
    await book(container, slot.id)
    assert (await container.allocator.get_slot(slot.id)).status == SlotStatus.FULL
    with pytest.raises(CapacityExceededError):
        await book(container, slot.id, booking_type=BookingType.PRE_BOOKED)

    _, other = await service_with_slot(container, name="Deepa Puja", time_windows=[window("12:00", "13:00")])
    await container.allocator.close_slot(other.id, "supervisor", "Festival")
    with pytest.raises(CapacityExceededError):
        await book(container, other.id)


@pytest.mark.asyncio
async def test_unknown_slot_raises_not_found(container):
    with pytest.raises(NotFoundError):
        await container.ledger.create_booking(uuid.uuid4(), devotee(), None, 1, **booking_options())


# ── Walk-in reserve ────────────────────────────────────────────────────────────

async def _fill(container, slot_id, count):
    for _ in range(count):
        await book(container, slot_id, booking_type=BookingType.PRE_BOOKED)


@pytest.mark.asyncio
async def test_walk_in_reserve_boundary(container):
    """capacity=50, 30% reserve (15): with 36 booked a walk-in is refused."""
    _, slot = await service_with_slot(
        container, capacity=50, walk_in=WalkInPolicy(allowed=True, reserved_percentage=30)
    )
    assert slot.walk_in_reserved == 15
    await _fill(container, slot.id, 36)

    with pytest.raises(CapacityExceededError):
        await book(container, slot.id, booking_type=BookingType.WALK_IN)

    # pre-booked bookings may still use the full capacity
    await book(container, slot.id, booking_type=BookingType.PRE_BOOKED)
    assert (await container.allocator.get_slot(slot.id)).booked_count == 37


@pytest.mark.asyncio
async def test_walk_in_allowed_up_to_reserve_ceiling(container):
    _, slot = await service_with_slot(
        container, capacity=10, walk_in=WalkInPolicy(allowed=True, reserved_percentage=30)
    )
    await _fill(container, slot.id, 6)
    await book(container, slot.id, booking_type=BookingType.WALK_IN)   # 7 == 10 - 3
    with pytest.raises(CapacityExceededError):
        await book(container, slot.id, booking_type=BookingType.WALK_IN)


@pytest.mark.asyncio
async def test_priority_service_reserve_override_is_audited(container):
    _, slot = await service_with_slot(
        container, capacity=10, is_priority=True,
        walk_in=WalkInPolicy(allowed=True, reserved_percentage=30),
    )
    await _fill(container, slot.id, 7)

    with pytest.raises(CapacityExceededError):
        await book(container, slot.id, booking_type=BookingType.WALK_IN)
    with pytest.raises(ValidationError):
        await book(container, slot.id, booking_type=BookingType.WALK_IN, override_reserve=True)

    booking = await book(
        container, slot.id, booking_type=BookingType.WALK_IN,
        override_reserve=True, override_approver="supervisor-1",
    )
    assert actions(booking) == [AuditAction.CREATED, AuditAction.RESERVE_OVERRIDE]
    assert booking.audit_log[1].details["approver"] == "supervisor-1"


@pytest.mark.asyncio
async def test_reserve_override_refused_for_regular_service(container):
    _, slot = await service_with_slot(
        container, capacity=10, walk_in=WalkInPolicy(allowed=True, reserved_percentage=30)
    )
    await _fill(container, slot.id, 7)
    with pytest.raises(CapacityExceededError):
        await book(
            container, slot.id, booking_type=BookingType.WALK_IN,
            override_reserve=True, override_approver="supervisor-1",
        )


# ── Price ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_price_mismatch_requires_approver(container):
    _, slot = await service_with_slot(container)
    with pytest.raises(ValidationError):
        await book(container, slot.id, payment=paid("400"))

    booking = await book(container, slot.id, payment=paid("400"), price_override_approver="trustee")
    assert booking.payment.amount == Decimal("400")
    assert booking.service.price == Decimal("500")
    assert actions(booking) == [
        AuditAction.CREATED,
        AuditAction.PRICE_OVERRIDE,
        AuditAction.PAYMENT_COLLECTED,
    ]


# ── Lifecycle ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pending_to_collected_to_completed_audit_trail(container):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id)

    collected = await container.ledger.record_payment(booking.id, paid("500", PaymentMode.CARD), "op-2")
    assert collected.status == BookingStatus.COLLECTED
    assert collected.payment.collected_by == "op-2"
    assert collected.payment.digital_amount == Decimal("500")

    completed = await container.ledger.complete_service(booking.id, "priest-1")
    assert completed.status == BookingStatus.COMPLETED

    stored = await container.ledger.get_booking(booking.id)
    assert actions(stored) == [AuditAction.CREATED, AuditAction.PAYMENT_COLLECTED, AuditAction.COMPLETED]
    assert [e.type for e in container.events.events] == ["CREATED", "COLLECTED", "COMPLETED"]


@pytest.mark.asyncio
async def test_record_payment_only_from_pending(container):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id, payment=paid())
    with pytest.raises(InvalidStateError):
        await container.ledger.record_payment(booking.id, paid(), "op-1")


@pytest.mark.asyncio
async def test_record_payment_requires_matching_amount_and_mode(container):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id)
    with pytest.raises(ValidationError):
        await container.ledger.record_payment(booking.id, paid("100"), "op-1")
    with pytest.raises(ValidationError):
        await container.ledger.record_payment(booking.id, paid("500", mode=None), "op-1")
    assert (await container.ledger.get_booking(booking.id)).status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_complete_requires_collected(container):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id)
    with pytest.raises(InvalidStateError):
        await container.ledger.complete_service(booking.id, "priest-1")


@pytest.mark.asyncio
async def test_cancel_before_start(container):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id, payment=paid())

    with pytest.raises(ValidationError):
        await container.ledger.cancel_booking(booking.id, " ", "op-1")

    cancelled = await container.ledger.cancel_booking(booking.id, "Devotee unwell", "op-1")
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancelled_by == "op-1"
    assert cancelled.audit_log[-1].reason == "Devotee unwell"
    with pytest.raises(InvalidStateError):
        await container.ledger.cancel_booking(booking.id, "again", "op-1")


@pytest.mark.asyncio
async def test_cancel_after_start_rejected(container, clock):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id)
    clock.set(TODAY, time(10, 15))
    with pytest.raises(InvalidStateError):
        await container.ledger.cancel_booking(booking.id, "Too late", "op-1")


@pytest.mark.asyncio
async def test_cancellation_does_not_restore_capacity(container):
    """Cancelled and no-show bookings keep their capacity unit consumed."""
    _, slot = await service_with_slot(container, capacity=1)
    booking = await book(container, slot.id)

    await container.ledger.cancel_booking(booking.id, "Plans changed", "op-1")

    stored = await container.allocator.get_slot(slot.id)
    assert stored.booked_count == 1
    assert stored.status == SlotStatus.FULL
    with pytest.raises(CapacityExceededError):
        await book(container, slot.id)


@pytest.mark.asyncio
async def test_no_show_only_after_slot_end(container, clock):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id, payment=paid())

    with pytest.raises(InvalidStateError):
        await container.ledger.mark_no_show(booking.id, "op-1")

    clock.set(TODAY, time(11, 0))
    marked = await container.ledger.mark_no_show(booking.id, "op-1", "Did not arrive")
    assert marked.status == BookingStatus.NO_SHOW
    assert marked.no_show_reason == "Did not arrive"
    assert (await container.allocator.get_slot(slot.id)).booked_count == 1


@pytest.mark.asyncio
async def test_terminal_states_are_final(container, clock):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id, payment=paid())
    await container.ledger.complete_service(booking.id, "priest-1")
    clock.set(TODAY, time(12, 0))

    with pytest.raises(InvalidStateError, match="already COMPLETED"):
        await container.ledger.mark_no_show(booking.id, "op-1")
    with pytest.raises(InvalidStateError):
        await container.ledger.complete_service(booking.id, "priest-1")
    stored = await container.ledger.get_booking(booking.id)
    assert [e.action for e in stored.audit_log][-1] == AuditAction.COMPLETED
    assert len(stored.audit_log) == 3


@pytest.mark.asyncio
async def test_reprint_requires_approver_and_keeps_status(container):
    _, slot = await service_with_slot(container)
    booking = await book(container, slot.id, payment=paid())

    with pytest.raises(ValidationError):
        await container.ledger.reprint_receipt(booking.id, "", "op-1")

    reprinted = await container.ledger.reprint_receipt(booking.id, "supervisor-1", "op-1", "Printer jam")
    assert reprinted.reprint_count == 1
    assert reprinted.status == BookingStatus.COLLECTED
    assert reprinted.audit_log[-1].action == AuditAction.REPRINT
    assert reprinted.audit_log[-1].details["approver"] == "supervisor-1"


@pytest.mark.asyncio
async def test_unpaid_sweep_marks_past_pending_bookings(container, clock):
    _, slot = await service_with_slot(container)
    unpaid = await book(container, slot.id)
    collected = await book(container, slot.id, payment=paid())

    assert await container.ledger.sweep_unpaid_no_shows() == []

    clock.set(TODAY, time(11, 30))
    swept = await container.ledger.sweep_unpaid_no_shows()
    assert [b.id for b in swept] == [unpaid.id]
    assert swept[0].no_show_marked_by == "system"
    assert (await container.ledger.get_booking(collected.id)).status == BookingStatus.COLLECTED


# ── Receipts & search ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_receipt_numbers_increase_per_counter_and_date(container, clock):
    _, slot = await service_with_slot(container, capacity=20, time_windows=[window("18:00", "19:00")])

    first = [await book(container, slot.id) for _ in range(3)]
    other = await book(container, slot.id, counter_id="counter2")
    clock.advance(days=1)
    [next_day_slot] = await container.allocator.generate_slots(slot.service_id, clock.now.date(), clock.now.date())
    next_day = await book(container, next_day_slot.id)

    assert [b.receipt_sequence for b in first] == [1, 2, 3]
    assert [b.receipt_number for b in first] == [
        "COUNTER1-20250114-000001",
        "COUNTER1-20250114-000002",
        "COUNTER1-20250114-000003",
    ]
    assert other.receipt_number == "COUNTER2-20250114-000001"
    assert next_day.receipt_number == "COUNTER1-20250115-000001"


@pytest.mark.asyncio
async def test_search_bookings_filters(container):
    _, slot = await service_with_slot(container, capacity=20)
    cash = await book(container, slot.id, payment=paid("500", PaymentMode.CASH), who=devotee(name="Ravi Kumar"))
    upi = await book(container, slot.id, payment=paid("500", PaymentMode.UPI), who=devotee(name="Sita Devi", phone="9000000001"))
    pending = await book(container, slot.id, counter_id="counter2")

    by_counter = await container.ledger.search_bookings(BookingFilter(counter_id="counter1"))
    assert [b.id for b in by_counter] == [cash.id, upi.id]

    by_mode = await container.ledger.search_bookings(BookingFilter(payment_mode=PaymentMode.UPI))
    assert [b.id for b in by_mode] == [upi.id]

    by_status = await container.ledger.search_bookings(BookingFilter(status=BookingStatus.PENDING))
    assert [b.id for b in by_status] == [pending.id]

    by_text = await container.ledger.search_bookings(BookingFilter(search="sita"))
    assert [b.id for b in by_text] == [upi.id]

    by_receipt = await container.ledger.search_bookings(BookingFilter(search="counter2-2025"))
    assert [b.id for b in by_receipt] == [pending.id]

    out_of_range = await container.ledger.search_bookings(
        BookingFilter(date_from=date(2025, 2, 1), date_to=date(2025, 2, 28))
    )
    assert out_of_range == []


# ── Settlement lock ────────────────────────────────────────────────────────────

async def _lock_morning(container, counter_id="counter1"):
    settlement = await container.reconciler.build_settlement(
        counter_id, TODAY, Shift.MORNING, Decimal("1000"), user_id="op-1"
    )
    await container.reconciler.submit_settlement(settlement.id, Decimal("1000") + settlement.system_cash_total, "op-1")
    return await container.reconciler.lock_settlement(settlement.id, "supervisor-1")


@pytest.mark.asyncio
async def test_locked_shift_freezes_bookings(container, clock):
    _, slot = await service_with_slot(container, capacity=20)
    pending = await book(container, slot.id)
    collected = await book(container, slot.id, payment=paid())
    await _lock_morning(container)

    with pytest.raises(SettlementLockedError):
        await container.ledger.record_payment(pending.id, paid(), "op-1")
    with pytest.raises(SettlementLockedError):
        await container.ledger.complete_service(collected.id, "priest-1")
    with pytest.raises(SettlementLockedError):
        await container.ledger.cancel_booking(pending.id, "Changed plans", "op-1")
    with pytest.raises(SettlementLockedError):
        await book(container, slot.id)

    # reprints are still allowed on a locked shift
    reprinted = await container.ledger.reprint_receipt(collected.id, "supervisor-1", "op-1")
    assert reprinted.reprint_count == 1

    # the locked shift is skipped by the unpaid sweep
    clock.set(TODAY, time(11, 30))
    assert await container.ledger.sweep_unpaid_no_shows() == []


@pytest.mark.asyncio
async def test_lock_is_scoped_to_counter_and_shift(container, clock):
    _, slot = await service_with_slot(container, capacity=20, time_windows=[window("18:00", "19:00")])
    await _lock_morning(container)

    other_counter = await book(container, slot.id, counter_id="counter2")
    assert other_counter.shift == Shift.MORNING

    clock.set(TODAY, time(13, 0))
    afternoon = await book(container, slot.id)
    assert afternoon.shift == Shift.AFTERNOON
