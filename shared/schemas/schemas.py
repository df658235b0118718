"""
shared/schemas/schemas.py
Pydantic v2 request/response schemas for the HTTP API.
"""

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.schemas.entities import (
    BookingStatus,
    BookingType,
    PaymentMode,
    ServiceCategory,
    Shift,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Services ──────────────────────────────────────────────────

class TimeWindowSchema(BaseSchema):
    start_time: time
    end_time: time


class AdvanceBookingSchema(BaseSchema):
    required: bool = False
    days_ahead: int = Field(0, ge=0)


class WalkInSchema(BaseSchema):
    allowed: bool = True
    reserved_percentage: int = Field(0, ge=0, le=100)


class ServiceCreateRequest(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    name_local: Optional[str] = Field(None, max_length=255)
    category: ServiceCategory = ServiceCategory.OTHER
    price: Decimal = Field(..., ge=0)
    duration_minutes: int = Field(..., gt=0)
    capacity: int = Field(..., gt=0)
    weekdays: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 6])
    time_windows: List[TimeWindowSchema] = Field(..., min_length=1)
    min_devotees: int = Field(1, ge=1)
    max_devotees: int = Field(1, ge=1)
    requires_identity_attribute: bool = False
    advance_booking: AdvanceBookingSchema = Field(default_factory=AdvanceBookingSchema)
    walk_in: WalkInSchema = Field(default_factory=WalkInSchema)
    is_priority: bool = False
    description: Optional[str] = Field(None, max_length=2000)


class ServiceUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    name_local: Optional[str] = None
    category: Optional[ServiceCategory] = None
    price: Optional[Decimal] = Field(None, ge=0)
    duration_minutes: Optional[int] = Field(None, gt=0)
    capacity: Optional[int] = Field(None, gt=0)
    weekdays: Optional[List[int]] = None
    time_windows: Optional[List[TimeWindowSchema]] = None
    min_devotees: Optional[int] = None
    max_devotees: Optional[int] = None
    requires_identity_attribute: Optional[bool] = None
    advance_booking: Optional[AdvanceBookingSchema] = None
    walk_in: Optional[WalkInSchema] = None
    is_priority: Optional[bool] = None
    description: Optional[str] = None


class ServiceResponse(BaseSchema):
    id: uuid.UUID
    name: str
    name_local: Optional[str]
    category: ServiceCategory
    price: Decimal
    duration_minutes: int
    capacity: int
    weekdays: List[int]
    time_windows: List[TimeWindowSchema]
    min_devotees: int
    max_devotees: int
    requires_identity_attribute: bool
    advance_booking: AdvanceBookingSchema
    walk_in: WalkInSchema
    is_active: bool
    is_priority: bool
    description: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


# ── Slots ─────────────────────────────────────────────────────

class SlotGenerateRequest(BaseSchema):
    service_id: Optional[uuid.UUID] = None   # None = every active service
    start_date: date
    end_date: Optional[date] = None
    days: Optional[int] = Field(None, ge=1, le=90)


class SlotCloseRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=255)


class SlotResponse(BaseSchema):
    id: uuid.UUID
    service_id: uuid.UUID
    service_name: str
    date: date
    start_time: time
    end_time: time
    capacity: int
    booked_count: int
    available_count: int
    walk_in_reserved: int
    status: str
    version: int
    override_allowed: bool
    is_closed: bool
    closed_reason: Optional[str]
    price: Decimal


# ── Bookings ──────────────────────────────────────────────────

class DevoteeSchema(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=6, max_length=20)
    email: Optional[str] = None
    identity_attribute: Optional[str] = Field(None, max_length=100)
    party_size: int = Field(1, ge=1)
    is_regular: bool = False


class PaymentRequest(BaseSchema):
    amount: Decimal = Field(..., ge=0)
    mode: Optional[PaymentMode] = None
    transaction_id: Optional[str] = Field(None, max_length=100)


class CollectPaymentRequest(BaseSchema):
    amount: Decimal = Field(..., ge=0)
    mode: PaymentMode
    transaction_id: Optional[str] = Field(None, max_length=100)


class BookingCreateRequest(BaseSchema):
    slot_id: uuid.UUID
    # Omit to book against the slot's current version with automatic retry
    expected_slot_version: Optional[int] = None
    devotee: DevoteeSchema
    payment: Optional[PaymentRequest] = None
    booking_type: BookingType = BookingType.WALK_IN
    override_reserve: bool = False
    override_approver: Optional[str] = None
    price_override_approver: Optional[str] = None


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)


class NoShowRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class ReprintRequest(BaseSchema):
    approver_id: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)


class BookedServiceSchema(BaseSchema):
    service_id: uuid.UUID
    name: str
    name_local: Optional[str]
    category: ServiceCategory
    price: Decimal
    duration_minutes: int
    date: date
    start_time: time
    end_time: time


class PaymentResponse(BaseSchema):
    amount: Decimal
    mode: Optional[PaymentMode]
    cash_amount: Decimal
    digital_amount: Decimal
    transaction_id: Optional[str]
    status: str
    collected_by: Optional[str]
    collected_at: Optional[datetime]


class AuditEntryResponse(BaseSchema):
    timestamp: datetime
    action: str
    user_id: str
    reason: Optional[str]
    details: Optional[Dict[str, Any]]


class BookingResponse(BaseSchema):
    id: uuid.UUID
    receipt_number: str
    slot_id: uuid.UUID
    service: BookedServiceSchema
    devotee: DevoteeSchema
    payment: PaymentResponse
    status: BookingStatus
    booking_type: BookingType
    counter_id: str
    counter_name: Optional[str]
    business_date: date
    shift: Shift
    created_by: str
    created_at: datetime
    updated_at: datetime
    cancellation_reason: Optional[str]
    cancelled_at: Optional[datetime]
    no_show_reason: Optional[str]
    no_show_marked_at: Optional[datetime]
    reprint_count: int
    audit_log: List[AuditEntryResponse]


# ── Settlement ────────────────────────────────────────────────

class SettlementBuildRequest(BaseSchema):
    counter_id: Optional[str] = None     # defaults to X-Counter-Id
    counter_name: Optional[str] = None
    date: date
    shift: Shift
    opening_balance: Decimal = Field(..., ge=0)
    target_revenue: Optional[Decimal] = Field(None, ge=0)


class SettlementSubmitRequest(BaseSchema):
    physical_cash_count: Decimal = Field(..., ge=0)
    variance_reason: Optional[str] = Field(None, max_length=500)


class SettlementResponse(BaseSchema):
    id: uuid.UUID
    counter_id: str
    counter_name: Optional[str]
    date: date
    shift: Shift
    opening_balance: Decimal
    closing_balance: Decimal
    system_cash_total: Decimal
    upi_total: Decimal
    card_total: Decimal
    digital_total: Decimal
    physical_cash_count: Optional[Decimal]
    variance: Decimal
    variance_reason: Optional[str]
    total_bookings: int
    cash_bookings: int
    digital_bookings: int
    pending_bookings: int
    total_revenue: Decimal
    target_revenue: Decimal
    achievement_percentage: float
    no_show_count: int
    no_show_revenue_loss: Decimal
    status: str
    submitted_by: Optional[str]
    submitted_at: Optional[datetime]
    locked_by: Optional[str]
    locked_at: Optional[datetime]
    is_locked: bool


class CounterSummaryResponse(BaseSchema):
    counter_id: str
    date: date
    shift: Optional[Shift]
    cash_collected: Decimal
    digital_collected: Decimal
    total_revenue: Decimal
    booking_count: int
    pending_count: int
    collected_count: int
    completed_count: int
    no_show_count: int
    cancelled_count: int


# ── Generic ───────────────────────────────────────────────────

class ErrorResponse(BaseSchema):
    detail: str
    error: Optional[str] = None
    request_id: Optional[str] = None


# OpenAPI documentation for the domain error mapping in main.py
ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (404, 409, 423)}
