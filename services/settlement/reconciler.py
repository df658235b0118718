"""
services/settlement/reconciler.py
SettlementReconciler: end-of-shift cash/digital reconciliation per counter.

DRAFT → SUBMITTED → LOCKED. A locked settlement freezes every booking in its
(counter, date, shift) scope; the ledger consults is_locked before mutating.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import List, Optional

from config.settings import settings
from services.settlement.estimators import CENTS, NoShowLossEstimator, estimator_from_settings
from shared.exceptions import InvalidStateError, NotFoundError, ValidationError
from shared.repositories.ports import BookingRepository, SettlementRepository
from shared.schemas.entities import (
    Booking,
    BookingFilter,
    BookingStatus,
    CounterSettlement,
    CounterSummary,
    PaymentMode,
    PaymentStatus,
    SettlementStatus,
    Shift,
)
from shared.utils.clock import Clock, business_now

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _sum(bookings: List[Booking], mode: PaymentMode) -> Decimal:
    return sum((b.payment.amount for b in bookings if b.payment.mode == mode), ZERO)


def achievement(total_revenue: Decimal, target_revenue: Decimal) -> float:
    if target_revenue <= 0:
        return 0.0
    return round(float(total_revenue / target_revenue * 100), 2)


class SettlementReconciler:
    def __init__(
        self,
        settlements: SettlementRepository,
        bookings: BookingRepository,
        estimator: Optional[NoShowLossEstimator] = None,
        now: Clock = business_now,
    ):
        self._settlements = settlements
        self._bookings = bookings
        self._estimator = estimator or estimator_from_settings()
        self._now = now

    async def build_settlement(
        self,
        counter_id: str,
        day: date,
        shift: Shift,
        opening_balance: Decimal,
        *,
        user_id: str,
        counter_name: Optional[str] = None,
        target_revenue: Optional[Decimal] = None,
    ) -> CounterSettlement:
        """Compute (or refresh, while still DRAFT) the settlement of one counter shift."""
        if opening_balance < ZERO:
            raise ValidationError("Opening balance cannot be negative")
        existing = await self._settlements.find_for_shift(counter_id, day, shift)
        if existing and existing.status != SettlementStatus.DRAFT:
            raise InvalidStateError(
                f"Settlement is already {existing.status.value}",
                settlement_id=str(existing.id),
            )

        bookings = await self._bookings.find(
            BookingFilter(counter_id=counter_id, business_date=day, shift=shift)
        )
        collected = [b for b in bookings if b.payment.status == PaymentStatus.COLLECTED]
        no_shows = [b for b in bookings if b.status == BookingStatus.NO_SHOW]

        cash_total = _sum(collected, PaymentMode.CASH)
        upi_total = _sum(collected, PaymentMode.UPI)
        card_total = _sum(collected, PaymentMode.CARD)
        digital_total = upi_total + card_total
        total_revenue = cash_total + digital_total

        if target_revenue is None:
            target_revenue = (
                existing.target_revenue
                if existing
                else Decimal(str(settings.DEFAULT_TARGET_REVENUE))
            )
        loss = (len(no_shows) * self._estimator.average_price(no_shows)).quantize(CENTS)

        now = self._now()
        settlement = CounterSettlement(
            id=existing.id if existing else uuid.uuid4(),
            counter_id=counter_id,
            counter_name=counter_name or (existing.counter_name if existing else None),
            date=day,
            shift=shift,
            opening_balance=opening_balance,
            closing_balance=opening_balance + cash_total,
            system_cash_total=cash_total,
            upi_total=upi_total,
            card_total=card_total,
            digital_total=digital_total,
            total_bookings=len(bookings),
            cash_bookings=sum(1 for b in collected if b.payment.mode == PaymentMode.CASH),
            digital_bookings=sum(1 for b in collected if b.payment.mode != PaymentMode.CASH),
            pending_bookings=sum(1 for b in bookings if b.status == BookingStatus.PENDING),
            total_revenue=total_revenue,
            target_revenue=target_revenue,
            achievement_percentage=achievement(total_revenue, target_revenue),
            no_show_count=len(no_shows),
            no_show_revenue_loss=loss,
            built_by=user_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if existing:
            await self._settlements.save(settlement)
        else:
            await self._settlements.add(settlement)

        logger.info(
            f"Settlement {'refreshed' if existing else 'built'} for {counter_id} "
            f"{day} {shift.value}: revenue ₹{total_revenue}, {len(bookings)} bookings"
        )
        return settlement

    async def submit_settlement(
        self,
        settlement_id: uuid.UUID,
        operator_cash_count: Decimal,
        user_id: str,
        variance_reason: Optional[str] = None,
    ) -> CounterSettlement:
        settlement = await self.get_settlement(settlement_id)
        if settlement.status != SettlementStatus.DRAFT:
            raise InvalidStateError(
                f"Only DRAFT settlements can be submitted (is {settlement.status.value})",
                settlement_id=str(settlement_id),
            )
        if operator_cash_count < ZERO:
            raise ValidationError("Cash count cannot be negative")
        now = self._now()
        settlement.physical_cash_count = operator_cash_count
        settlement.variance = operator_cash_count - settlement.system_cash_total
        settlement.variance_reason = variance_reason
        settlement.closing_balance = settlement.opening_balance + settlement.system_cash_total
        settlement.status = SettlementStatus.SUBMITTED
        settlement.submitted_by = user_id
        settlement.submitted_at = now
        settlement.updated_at = now
        await self._settlements.save(settlement)
        if settlement.variance:
            logger.warning(
                f"Settlement {settlement_id} submitted with variance ₹{settlement.variance}"
            )
        else:
            logger.info(f"Settlement {settlement_id} submitted by {user_id}")
        return settlement

    async def lock_settlement(self, settlement_id: uuid.UUID, approver_id: str) -> CounterSettlement:
        if not approver_id or not approver_id.strip():
            raise ValidationError("Locking a settlement requires an approver")
        settlement = await self.get_settlement(settlement_id)
        if settlement.status != SettlementStatus.SUBMITTED:
            raise InvalidStateError(
                f"Only SUBMITTED settlements can be locked (is {settlement.status.value})",
                settlement_id=str(settlement_id),
            )
        now = self._now()
        settlement.status = SettlementStatus.LOCKED
        settlement.is_locked = True
        settlement.locked_by = approver_id
        settlement.locked_at = now
        settlement.updated_at = now
        await self._settlements.save(settlement)
        logger.info(
            f"Settlement {settlement_id} locked by {approver_id}: "
            f"{settlement.counter_id} {settlement.date} {settlement.shift.value}"
        )
        return settlement

    async def get_settlement(self, settlement_id: uuid.UUID) -> CounterSettlement:
        settlement = await self._settlements.get(settlement_id)
        if not settlement:
            raise NotFoundError("Settlement not found", settlement_id=str(settlement_id))
        return settlement

    async def find_settlement(
        self, counter_id: str, day: date, shift: Shift
    ) -> Optional[CounterSettlement]:
        return await self._settlements.find_for_shift(counter_id, day, shift)

    async def summarize_counter(
        self, counter_id: str, day: date, shift: Optional[Shift] = None
    ) -> CounterSummary:
        bookings = await self._bookings.find(
            BookingFilter(counter_id=counter_id, business_date=day, shift=shift)
        )
        collected = [b for b in bookings if b.payment.status == PaymentStatus.COLLECTED]
        cash = sum((b.payment.cash_amount for b in collected), ZERO)
        digital = sum((b.payment.digital_amount for b in collected), ZERO)

        def count(status: BookingStatus) -> int:
            return sum(1 for b in bookings if b.status == status)

        return CounterSummary(
            counter_id=counter_id,
            date=day,
            shift=shift,
            cash_collected=cash,
            digital_collected=digital,
            total_revenue=cash + digital,
            booking_count=len(bookings),
            pending_count=count(BookingStatus.PENDING),
            collected_count=count(BookingStatus.COLLECTED),
            completed_count=count(BookingStatus.COMPLETED),
            no_show_count=count(BookingStatus.NO_SHOW),
            cancelled_count=count(BookingStatus.CANCELLED),
        )
