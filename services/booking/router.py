"""
services/booking/router.py
Counter booking desk: create bookings and drive them through
PENDING → COLLECTED → COMPLETED | CANCELLED | NO_SHOW.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from shared.dependencies import Container, get_container
from shared.middleware.auth import Operator, require_counter, require_operator
from shared.schemas.entities import (
    BookingFilter,
    BookingStatus,
    BookingType,
    DevoteeInfo,
    PaymentMode,
    PaymentRecord,
    ServiceCategory,
    Shift,
)
from shared.schemas.schemas import (
    ERROR_RESPONSES,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
    CollectPaymentRequest,
    NoShowRequest,
    ReprintRequest,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"], responses=ERROR_RESPONSES)


# ── Booking Creation ──────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    operator: Operator = Depends(require_counter),
    container: Container = Depends(get_container),
):
    """
    Book one unit of a slot. With expected_slot_version the call fails fast
    on a stale read (409); without it the slot is re-read and the booking
    retried once on a version conflict. Supplying a payment mode collects
    payment immediately.
    """
    devotee = DevoteeInfo.model_validate(data.devotee.model_dump())
    payment = PaymentRecord.model_validate(data.payment.model_dump()) if data.payment else None
    options = dict(
        booking_type=BookingType(data.booking_type),
        counter_id=operator.counter_id,
        counter_name=operator.counter_name,
        user_id=operator.user_id,
        override_reserve=data.override_reserve,
        override_approver=data.override_approver,
        price_override_approver=data.price_override_approver,
    )
    if data.expected_slot_version is None:
        return await container.ledger.create_booking_with_retry(data.slot_id, devotee, payment, **options)
    return await container.ledger.create_booking(
        data.slot_id, devotee, payment, data.expected_slot_version, **options
    )


# ── Queries ───────────────────────────────────────────────────

@router.get("", response_model=List[BookingResponse])
async def search_bookings(
    counter_id: Optional[str] = None,
    business_date: Optional[date] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    shift: Optional[Shift] = None,
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    booking_type: Optional[BookingType] = None,
    payment_mode: Optional[PaymentMode] = None,
    category: Optional[ServiceCategory] = None,
    service_id: Optional[UUID] = None,
    search: Optional[str] = Query(None, min_length=2, max_length=100),
    container: Container = Depends(get_container),
):
    filters = BookingFilter(
        counter_id=counter_id,
        business_date=business_date,
        date_from=date_from,
        date_to=date_to,
        shift=shift,
        status=booking_status,
        booking_type=booking_type,
        payment_mode=payment_mode,
        category=category,
        service_id=service_id,
        search=search,
    )
    return await container.ledger.search_bookings(filters)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: UUID, container: Container = Depends(get_container)):
    return await container.ledger.get_booking(booking_id)


# ── Lifecycle ─────────────────────────────────────────────────

@router.post("/{booking_id}/payment", response_model=BookingResponse)
async def record_payment(
    booking_id: UUID,
    data: CollectPaymentRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """PENDING → COLLECTED."""
    payment = PaymentRecord.model_validate(data.model_dump())
    return await container.ledger.record_payment(booking_id, payment, operator.user_id)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_service(
    booking_id: UUID,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """COLLECTED → COMPLETED."""
    return await container.ledger.complete_service(booking_id, operator.user_id)


@router.post("/{booking_id}/no-show", response_model=BookingResponse)
async def mark_no_show(
    booking_id: UUID,
    data: NoShowRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """PENDING | COLLECTED → NO_SHOW, once the slot has ended."""
    return await container.ledger.mark_no_show(booking_id, operator.user_id, data.reason)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """PENDING | COLLECTED → CANCELLED, before the slot starts. Capacity is not released."""
    return await container.ledger.cancel_booking(booking_id, data.reason, operator.user_id)


@router.post("/{booking_id}/reprint", response_model=BookingResponse)
async def reprint_receipt(
    booking_id: UUID,
    data: ReprintRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    return await container.ledger.reprint_receipt(
        booking_id, data.approver_id, operator.user_id, data.reason
    )
