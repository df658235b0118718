"""
services/booking/ledger.py
BookingLedger: creates bookings against slot capacity and drives every
booking through its lifecycle.

States: PENDING → COLLECTED → COMPLETED
        PENDING | COLLECTED → CANCELLED   (before the slot starts)
        PENDING | COLLECTED → NO_SHOW     (after the slot ends)
COMPLETED, NO_SHOW and CANCELLED are terminal. Cancellation and no-show
never give capacity back to the slot.
"""

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from services.slots.allocator import SlotAllocator
from shared.events import EventBus, event_payload
from shared.exceptions import (
    CapacityExceededError,
    ConcurrentModificationError,
    EligibilityError,
    InvalidStateError,
    NotFoundError,
    SettlementLockedError,
    ValidationError,
)
from shared.repositories.ports import BookingRepository, ShiftLockIndex
from shared.schemas.entities import (
    AuditAction,
    AuditEntry,
    BookedService,
    Booking,
    BookingFilter,
    BookingStatus,
    BookingType,
    DevoteeInfo,
    PaymentMode,
    PaymentRecord,
    PaymentStatus,
    SlotInstance,
    SlotStatus,
)
from shared.utils.clock import Clock, at_local, business_now, shift_for

logger = logging.getLogger(__name__)


# ── State machine ─────────────────────────────────────────────

TRANSITIONS: Dict[str, Tuple[FrozenSet[BookingStatus], BookingStatus]] = {
    "collect": (frozenset({BookingStatus.PENDING}), BookingStatus.COLLECTED),
    "complete": (frozenset({BookingStatus.COLLECTED}), BookingStatus.COMPLETED),
    "no_show": (frozenset({BookingStatus.PENDING, BookingStatus.COLLECTED}), BookingStatus.NO_SHOW),
    "cancel": (frozenset({BookingStatus.PENDING, BookingStatus.COLLECTED}), BookingStatus.CANCELLED),
}

EVENT_FOR_STATUS = {
    BookingStatus.COLLECTED: "COLLECTED",
    BookingStatus.COMPLETED: "COMPLETED",
    BookingStatus.NO_SHOW: "NO_SHOW",
    BookingStatus.CANCELLED: "CANCELLED",
}


def receipt_number(counter_id: str, business_date: date, sequence: int) -> str:
    """e.g. COUNTER1-20250114-000042"""
    return f"{counter_id.upper()}-{business_date:%Y%m%d}-{sequence:06d}"


def _collected(payment: PaymentRecord, amount: Decimal, user_id: str, at: datetime) -> PaymentRecord:
    if payment.mode is None:
        raise ValidationError("Payment mode is required to collect payment")
    is_cash = payment.mode == PaymentMode.CASH
    return PaymentRecord(
        amount=amount,
        mode=payment.mode,
        cash_amount=amount if is_cash else Decimal("0"),
        digital_amount=Decimal("0") if is_cash else amount,
        transaction_id=payment.transaction_id,
        status=PaymentStatus.COLLECTED,
        collected_by=user_id,
        collected_at=at,
    )


class BookingLedger:
    def __init__(
        self,
        bookings: BookingRepository,
        allocator: SlotAllocator,
        locks: ShiftLockIndex,
        events: EventBus,
        now: Clock = business_now,
        conflict_retries: int = settings.BOOKING_CONFLICT_RETRIES,
        retry_backoff: float = settings.BOOKING_RETRY_BACKOFF_SECONDS,
    ):
        self._bookings = bookings
        self._allocator = allocator
        self._locks = locks
        self._events = events
        self._now = now
        self._conflict_retries = conflict_retries
        self._retry_backoff = retry_backoff

    # ── Creation ──────────────────────────────────────────────

    async def create_booking(
        self,
        slot_id: uuid.UUID,
        devotee: DevoteeInfo,
        payment: Optional[PaymentRecord],
        expected_slot_version: int,
        *,
        booking_type: BookingType,
        counter_id: str,
        user_id: str,
        counter_name: Optional[str] = None,
        override_reserve: bool = False,
        override_approver: Optional[str] = None,
        price_override_approver: Optional[str] = None,
    ) -> Booking:
        now = self._now()
        business_date, shift = now.date(), shift_for(now.time())
        slot = await self._allocator.get_slot(slot_id)

        if slot.version != expected_slot_version:
            raise ConcurrentModificationError(
                "Slot was modified by another request",
                expected_version=expected_slot_version,
                current_version=slot.version,
                slot_id=str(slot_id),
            )
        if not counter_id:
            raise ValidationError("counter_id is required")
        if await self._locks.is_locked(counter_id, business_date, shift):
            raise SettlementLockedError(
                "Counter shift is locked",
                counter_id=counter_id,
                date=business_date.isoformat(),
                shift=shift.value,
            )
        if slot.status == SlotStatus.CLOSED:
            raise CapacityExceededError("Slot is closed", slot_id=str(slot_id))
        if slot.status == SlotStatus.FULL:
            raise CapacityExceededError("Slot is full", slot_id=str(slot_id), capacity=slot.capacity)

        self._check_devotee(devotee)
        self._check_eligibility(slot, devotee, booking_type, business_date)
        if at_local(slot.date, slot.end_time) <= now:
            raise ValidationError("Slot has already ended", slot_id=str(slot_id))

        audit: List[AuditEntry] = [
            AuditEntry(
                timestamp=now,
                action=AuditAction.CREATED,
                user_id=user_id,
                details={"booking_type": booking_type.value, "slot_version": expected_slot_version},
            )
        ]

        if booking_type == BookingType.WALK_IN and slot.booked_count + 1 > slot.walk_in_ceiling:
            if not override_reserve:
                logger.warning(f"Walk-in refused on slot {slot_id}: reserve boundary reached")
                raise CapacityExceededError(
                    "Walk-in reserve is protected for this slot",
                    slot_id=str(slot_id),
                    booked_count=slot.booked_count,
                    walk_in_ceiling=slot.walk_in_ceiling,
                )
            if not slot.override_allowed:
                raise CapacityExceededError(
                    "Reserve override is only available on priority services",
                    slot_id=str(slot_id),
                )
            if not override_approver:
                raise ValidationError("Reserve override requires an approver")
            audit.append(
                AuditEntry(
                    timestamp=now,
                    action=AuditAction.RESERVE_OVERRIDE,
                    user_id=user_id,
                    details={
                        "approver": override_approver,
                        "booked_count": slot.booked_count,
                        "walk_in_ceiling": slot.walk_in_ceiling,
                    },
                )
            )

        price = slot.rules.price
        amount = payment.amount if payment is not None else price
        if amount < Decimal("0"):
            raise ValidationError("Payment amount cannot be negative")
        if amount != price:
            if not price_override_approver:
                raise ValidationError(
                    "Payment amount differs from the service price",
                    amount=str(amount),
                    price=str(price),
                )
            audit.append(
                AuditEntry(
                    timestamp=now,
                    action=AuditAction.PRICE_OVERRIDE,
                    user_id=user_id,
                    details={
                        "approver": price_override_approver,
                        "snapshot_price": str(price),
                        "charged_amount": str(amount),
                    },
                )
            )

        if payment is not None and payment.mode is not None:
            record = _collected(payment, amount, user_id, now)
            status = BookingStatus.COLLECTED
            audit.append(
                AuditEntry(
                    timestamp=now,
                    action=AuditAction.PAYMENT_COLLECTED,
                    user_id=user_id,
                    details={"mode": record.mode.value, "amount": str(amount)},
                )
            )
        else:
            record = PaymentRecord(amount=amount)
            status = BookingStatus.PENDING

        # Everything above is side-effect free. The capacity unit, receipt
        # sequence and booking row are written together below.
        slot = await self._allocator.reserve_unit(slot_id, expected_slot_version)

        def build(sequence: int) -> Booking:
            return Booking(
                receipt_number=receipt_number(counter_id, business_date, sequence),
                receipt_sequence=sequence,
                slot_id=slot.id,
                service=BookedService(
                    service_id=slot.service_id,
                    slot_id=slot.id,
                    name=slot.rules.name,
                    name_local=slot.rules.name_local,
                    category=slot.rules.category,
                    price=price,
                    duration_minutes=slot.rules.duration_minutes,
                    date=slot.date,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                ),
                devotee=devotee,
                payment=record,
                status=status,
                booking_type=booking_type,
                counter_id=counter_id,
                counter_name=counter_name,
                business_date=business_date,
                shift=shift,
                created_by=user_id,
                created_at=now,
                updated_at=now,
                audit_log=audit,
            )

        booking, _ = await self._bookings.add_with_capacity(
            slot, expected_slot_version, counter_id, business_date, build
        )

        logger.info(
            f"Booking {booking.receipt_number} created on slot {slot.id} "
            f"({booking_type.value}, {status.value}) by {user_id}"
        )
        await self._emit("CREATED", booking)
        if status == BookingStatus.COLLECTED:
            await self._emit("COLLECTED", booking)
        return booking

    async def create_booking_with_retry(
        self,
        slot_id: uuid.UUID,
        devotee: DevoteeInfo,
        payment: Optional[PaymentRecord],
        *,
        attempts: Optional[int] = None,
        **options,
    ) -> Booking:
        """
        Create a booking against the slot's current version, re-reading the
        slot and retrying when another request wins the version race.
        """
        attempts = attempts or self._conflict_retries + 1
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ConcurrentModificationError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self._retry_backoff, max=2),
            reraise=True,
        ):
            with attempt:
                slot = await self._allocator.get_slot(slot_id)
                return await self.create_booking(slot_id, devotee, payment, slot.version, **options)

    @staticmethod
    def _check_devotee(devotee: DevoteeInfo) -> None:
        if not devotee.name or not devotee.name.strip():
            raise ValidationError("Devotee name is required")
        if not devotee.phone or not devotee.phone.strip():
            raise ValidationError("Devotee phone is required")

    @staticmethod
    def _check_eligibility(
        slot: SlotInstance, devotee: DevoteeInfo, booking_type: BookingType, business_date: date
    ) -> None:
        rules = slot.rules
        if not rules.min_devotees <= devotee.party_size <= rules.max_devotees:
            raise EligibilityError(
                f"Party size must be between {rules.min_devotees} and {rules.max_devotees}",
                party_size=devotee.party_size,
            )
        if rules.requires_identity_attribute and not (devotee.identity_attribute or "").strip():
            raise EligibilityError("This seva requires the devotee's gotra")

        if booking_type == BookingType.WALK_IN:
            if not rules.walk_in_allowed:
                raise EligibilityError("Walk-ins are not accepted for this seva")
            if slot.date != business_date:
                raise EligibilityError(
                    "Walk-ins can only be booked for today's slots",
                    slot_date=slot.date.isoformat(),
                )
            return

        days_ahead = (slot.date - business_date).days
        policy = rules.advance_booking
        if policy.required and days_ahead < 1:
            raise EligibilityError("This seva must be booked at least a day in advance")
        if policy.days_ahead and days_ahead > policy.days_ahead:
            raise EligibilityError(
                f"This seva can be booked at most {policy.days_ahead} days ahead",
                days_ahead=days_ahead,
            )

    # ── Transitions ───────────────────────────────────────────

    async def _load_for(self, booking_id: uuid.UUID, transition: str) -> Booking:
        booking = await self.get_booking(booking_id)
        await self._ensure_unlocked(booking)
        allowed, target = TRANSITIONS[transition]
        if booking.is_terminal:
            raise InvalidStateError(
                f"Booking is already {booking.status.value}",
                booking_id=str(booking_id),
                status=booking.status.value,
            )
        if booking.status not in allowed:
            logger.warning(
                f"Rejected {transition} on {booking.receipt_number}: status is {booking.status.value}"
            )
            raise InvalidStateError(
                f"Cannot move booking from {booking.status.value} to {target.value}",
                booking_id=str(booking_id),
                status=booking.status.value,
            )
        return booking

    async def _ensure_unlocked(self, booking: Booking) -> None:
        if await self._locks.is_locked(booking.counter_id, booking.business_date, booking.shift):
            raise SettlementLockedError(
                "Counter shift is locked",
                booking_id=str(booking.id),
                counter_id=booking.counter_id,
                date=booking.business_date.isoformat(),
                shift=booking.shift.value,
            )

    async def _commit(self, booking: Booking, status: BookingStatus, entry: AuditEntry) -> Booking:
        previous = booking.status
        booking.status = status
        booking.updated_at = entry.timestamp
        await self._bookings.update(booking, entry, expected_status=previous)
        booking.audit_log.append(entry)
        logger.info(
            f"Booking {booking.receipt_number}: {previous.value} → {status.value} by {entry.user_id}"
        )
        await self._emit(EVENT_FOR_STATUS[status], booking)
        return booking

    async def record_payment(self, booking_id: uuid.UUID, payment: PaymentRecord, user_id: str) -> Booking:
        booking = await self._load_for(booking_id, "collect")
        if payment.amount != booking.payment.amount:
            raise ValidationError(
                "Collected amount does not match the booking amount",
                amount=str(payment.amount),
                expected=str(booking.payment.amount),
            )
        now = self._now()
        booking.payment = _collected(payment, booking.payment.amount, user_id, now)
        entry = AuditEntry(
            timestamp=now,
            action=AuditAction.PAYMENT_COLLECTED,
            user_id=user_id,
            details={"mode": booking.payment.mode.value, "amount": str(booking.payment.amount)},
        )
        return await self._commit(booking, BookingStatus.COLLECTED, entry)

    async def complete_service(self, booking_id: uuid.UUID, user_id: str) -> Booking:
        booking = await self._load_for(booking_id, "complete")
        entry = AuditEntry(timestamp=self._now(), action=AuditAction.COMPLETED, user_id=user_id)
        return await self._commit(booking, BookingStatus.COMPLETED, entry)

    async def mark_no_show(
        self, booking_id: uuid.UUID, user_id: str, reason: Optional[str] = None
    ) -> Booking:
        booking = await self._load_for(booking_id, "no_show")
        now = self._now()
        if at_local(booking.service.date, booking.service.end_time) > now:
            raise InvalidStateError(
                "No-show can only be marked after the slot has ended",
                booking_id=str(booking_id),
            )
        booking.no_show_reason = reason
        booking.no_show_marked_by = user_id
        booking.no_show_marked_at = now
        entry = AuditEntry(timestamp=now, action=AuditAction.NO_SHOW, user_id=user_id, reason=reason)
        return await self._commit(booking, BookingStatus.NO_SHOW, entry)

    async def cancel_booking(self, booking_id: uuid.UUID, reason: str, user_id: str) -> Booking:
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required")
        booking = await self._load_for(booking_id, "cancel")
        now = self._now()
        if at_local(booking.service.date, booking.service.start_time) <= now:
            raise InvalidStateError(
                "Bookings can only be cancelled before the slot starts",
                booking_id=str(booking_id),
            )
        booking.cancellation_reason = reason
        booking.cancelled_by = user_id
        booking.cancelled_at = now
        entry = AuditEntry(
            timestamp=now,
            action=AuditAction.CANCELLED,
            user_id=user_id,
            reason=reason,
            details={"payment_status": booking.payment.status.value},
        )
        return await self._commit(booking, BookingStatus.CANCELLED, entry)

    async def reprint_receipt(
        self,
        booking_id: uuid.UUID,
        approver_id: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> Booking:
        """Reprint needs a supervisor but never changes status or payment."""
        if not approver_id or not approver_id.strip():
            raise ValidationError("Reprint requires an approver")
        booking = await self.get_booking(booking_id)
        now = self._now()
        booking.reprint_count += 1
        booking.updated_at = now
        entry = AuditEntry(
            timestamp=now,
            action=AuditAction.REPRINT,
            user_id=user_id,
            reason=reason,
            details={"approver": approver_id, "reprint_count": booking.reprint_count},
        )
        await self._bookings.update(booking, entry, expected_status=booking.status)
        booking.audit_log.append(entry)
        logger.info(f"Receipt {booking.receipt_number} reprinted by {user_id}, approved by {approver_id}")
        return booking

    # ── Queries ───────────────────────────────────────────────

    async def get_booking(self, booking_id: uuid.UUID) -> Booking:
        booking = await self._bookings.get(booking_id)
        if not booking:
            raise NotFoundError("Booking not found", booking_id=str(booking_id))
        return booking

    async def search_bookings(self, filters: BookingFilter) -> List[Booking]:
        return await self._bookings.find(filters)

    # ── Housekeeping ──────────────────────────────────────────

    async def sweep_unpaid_no_shows(self, now: Optional[datetime] = None) -> List[Booking]:
        """Mark PENDING bookings whose slot has ended as NO_SHOW. Locked shifts are skipped."""
        now = now or self._now()
        swept = []
        for booking in await self._bookings.find(BookingFilter(status=BookingStatus.PENDING)):
            if at_local(booking.service.date, booking.service.end_time) > now:
                continue
            if await self._locks.is_locked(booking.counter_id, booking.business_date, booking.shift):
                continue
            booking.no_show_reason = "Payment not collected before slot end"
            booking.no_show_marked_by = settings.SYSTEM_USER_ID
            booking.no_show_marked_at = now
            entry = AuditEntry(
                timestamp=now,
                action=AuditAction.NO_SHOW,
                user_id=settings.SYSTEM_USER_ID,
                reason=booking.no_show_reason,
            )
            try:
                swept.append(await self._commit(booking, BookingStatus.NO_SHOW, entry))
            except InvalidStateError:
                # paid or cancelled at a counter while the sweep was running
                logger.info(f"sweep_unpaid_no_shows: {booking.receipt_number} moved on, skipped")
        if swept:
            logger.info(f"sweep_unpaid_no_shows: marked {len(swept)} bookings")
        return swept

    async def _emit(self, event_type: str, booking: Booking) -> None:
        await self._events.publish(
            event_type,
            event_payload(
                booking_id=booking.id,
                receipt_number=booking.receipt_number,
                slot_id=booking.slot_id,
                counter_id=booking.counter_id,
                status=booking.status,
                amount=booking.payment.amount,
            ),
        )
