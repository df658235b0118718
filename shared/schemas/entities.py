"""
shared/schemas/entities.py
Domain entities of the seva counter engine (Pydantic v2).
Repositories persist and return these; ORM rows never leave the store layer.
"""

import math
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ── Enumerations ──────────────────────────────────────────────

class ServiceCategory(str, Enum):
    ARCHANA = "ARCHANA"
    ABHISHEKAM = "ABHISHEKAM"
    DARSHAN = "DARSHAN"
    SPECIAL_PUJA = "SPECIAL_PUJA"
    DONATION = "DONATION"
    OTHER = "OTHER"


class SlotStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    LIMITED = "LIMITED"
    FULL = "FULL"
    CLOSED = "CLOSED"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    COLLECTED = "COLLECTED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"


class BookingType(str, Enum):
    WALK_IN = "WALK_IN"
    PRE_BOOKED = "PRE_BOOKED"


class PaymentMode(str, Enum):
    CASH = "CASH"
    UPI = "UPI"
    CARD = "CARD"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COLLECTED = "COLLECTED"


class SettlementStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    LOCKED = "LOCKED"


class Shift(str, Enum):
    MORNING = "MORNING"
    AFTERNOON = "AFTERNOON"
    EVENING = "EVENING"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    PAYMENT_COLLECTED = "PAYMENT_COLLECTED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"
    REPRINT = "REPRINT"
    RESERVE_OVERRIDE = "RESERVE_OVERRIDE"
    PRICE_OVERRIDE = "PRICE_OVERRIDE"


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.NO_SHOW, BookingStatus.CANCELLED}
)


class Entity(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ── Service catalog ───────────────────────────────────────────

class TimeWindow(Entity):
    start_time: time
    end_time: time


class AdvanceBookingPolicy(Entity):
    required: bool = False
    days_ahead: int = 0     # 0 = no limit on how far ahead


class WalkInPolicy(Entity):
    allowed: bool = True
    reserved_percentage: int = 0


class ServiceDefinition(Entity):
    """A bookable seva type. Rule checks live in ServiceCatalog."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str
    name_local: Optional[str] = None
    category: ServiceCategory = ServiceCategory.OTHER
    price: Decimal
    duration_minutes: int
    capacity: int
    weekdays: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 6])
    time_windows: List[TimeWindow]
    min_devotees: int = 1
    max_devotees: int = 1
    requires_identity_attribute: bool = False
    advance_booking: AdvanceBookingPolicy = Field(default_factory=AdvanceBookingPolicy)
    walk_in: WalkInPolicy = Field(default_factory=WalkInPolicy)
    is_active: bool = True
    is_priority: bool = False
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def effective_reserved_percentage(self) -> int:
        return self.walk_in.reserved_percentage if self.walk_in.allowed else 0


# ── Slots ─────────────────────────────────────────────────────

class ServiceSnapshot(Entity):
    """Service rules frozen into a slot when it is materialized."""

    service_id: uuid.UUID
    name: str
    name_local: Optional[str] = None
    category: ServiceCategory
    price: Decimal
    duration_minutes: int
    min_devotees: int
    max_devotees: int
    requires_identity_attribute: bool
    walk_in_allowed: bool
    advance_booking: AdvanceBookingPolicy
    is_priority: bool

    @classmethod
    def of(cls, service: ServiceDefinition) -> "ServiceSnapshot":
        return cls(
            service_id=service.id,
            name=service.name,
            name_local=service.name_local,
            category=service.category,
            price=service.price,
            duration_minutes=service.duration_minutes,
            min_devotees=service.min_devotees,
            max_devotees=service.max_devotees,
            requires_identity_attribute=service.requires_identity_attribute,
            walk_in_allowed=service.walk_in.allowed,
            advance_booking=service.advance_booking.model_copy(),
            is_priority=service.is_priority,
        )


def walk_in_reserve(capacity: int, reserved_percentage: int) -> int:
    return math.floor(capacity * reserved_percentage / 100)


def derive_slot_status(
    booked_count: int,
    capacity: int,
    is_closed: bool = False,
    limited_ratio: float = 0.2,
) -> SlotStatus:
    """Status is a pure function of occupancy; CLOSED only by administrative action."""
    if is_closed:
        return SlotStatus.CLOSED
    if booked_count >= capacity:
        return SlotStatus.FULL
    if capacity - booked_count <= capacity * limited_ratio:
        return SlotStatus.LIMITED
    return SlotStatus.AVAILABLE


class SlotInstance(Entity):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    service_id: uuid.UUID
    date: date
    start_time: time
    end_time: time
    capacity: int
    booked_count: int = 0
    walk_in_reserved: int = 0
    version: int = 1
    override_allowed: bool = False
    is_closed: bool = False
    closed_by: Optional[str] = None
    closed_reason: Optional[str] = None
    rules: ServiceSnapshot
    created_at: Optional[datetime] = None

    @computed_field
    @property
    def available_count(self) -> int:
        return self.capacity - self.booked_count

    @computed_field
    @property
    def status(self) -> SlotStatus:
        return derive_slot_status(self.booked_count, self.capacity, self.is_closed)

    @property
    def walk_in_ceiling(self) -> int:
        """Highest booked_count a walk-in may bring the slot to."""
        return self.capacity - self.walk_in_reserved


# ── Bookings ──────────────────────────────────────────────────

class DevoteeInfo(Entity):
    name: str
    phone: str
    email: Optional[str] = None
    identity_attribute: Optional[str] = None     # e.g. gotra
    party_size: int = 1
    is_regular: bool = False


class BookedService(Entity):
    """Denormalized service/slot data as it stood when the booking was made."""

    service_id: uuid.UUID
    slot_id: uuid.UUID
    name: str
    name_local: Optional[str] = None
    category: ServiceCategory
    price: Decimal
    duration_minutes: int
    date: date
    start_time: time
    end_time: time


class PaymentRecord(Entity):
    amount: Decimal
    mode: Optional[PaymentMode] = None
    cash_amount: Decimal = Decimal("0")
    digital_amount: Decimal = Decimal("0")
    transaction_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    collected_by: Optional[str] = None
    collected_at: Optional[datetime] = None


class AuditEntry(Entity):
    timestamp: datetime
    action: AuditAction
    user_id: str
    reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class Booking(Entity):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    receipt_number: str
    receipt_sequence: int
    slot_id: uuid.UUID
    service: BookedService
    devotee: DevoteeInfo
    payment: PaymentRecord
    status: BookingStatus = BookingStatus.PENDING
    booking_type: BookingType
    counter_id: str
    counter_name: Optional[str] = None
    business_date: date
    shift: Shift
    created_by: str
    created_at: datetime
    updated_at: datetime
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    no_show_reason: Optional[str] = None
    no_show_marked_by: Optional[str] = None
    no_show_marked_at: Optional[datetime] = None
    reprint_count: int = 0
    audit_log: List[AuditEntry] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class BookingFilter(Entity):
    counter_id: Optional[str] = None
    business_date: Optional[date] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    shift: Optional[Shift] = None
    status: Optional[BookingStatus] = None
    booking_type: Optional[BookingType] = None
    payment_mode: Optional[PaymentMode] = None
    category: Optional[ServiceCategory] = None
    service_id: Optional[uuid.UUID] = None
    search: Optional[str] = None    # devotee name / phone / receipt number

    def matches(self, booking: Booking) -> bool:
        if self.counter_id and booking.counter_id != self.counter_id:
            return False
        if self.business_date and booking.business_date != self.business_date:
            return False
        if self.date_from and booking.business_date < self.date_from:
            return False
        if self.date_to and booking.business_date > self.date_to:
            return False
        if self.shift and booking.shift != self.shift:
            return False
        if self.status and booking.status != self.status:
            return False
        if self.booking_type and booking.booking_type != self.booking_type:
            return False
        if self.payment_mode and booking.payment.mode != self.payment_mode:
            return False
        if self.category and booking.service.category != self.category:
            return False
        if self.service_id and booking.service.service_id != self.service_id:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = (
                booking.devotee.name.lower(),
                booking.devotee.phone,
                booking.receipt_number.lower(),
            )
            if not any(needle in field for field in haystack):
                return False
        return True


# ── Settlement ────────────────────────────────────────────────

class CounterSettlement(Entity):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    counter_id: str
    counter_name: Optional[str] = None
    date: date
    shift: Shift
    opening_balance: Decimal
    closing_balance: Decimal
    system_cash_total: Decimal = Decimal("0")
    upi_total: Decimal = Decimal("0")
    card_total: Decimal = Decimal("0")
    digital_total: Decimal = Decimal("0")
    physical_cash_count: Optional[Decimal] = None
    variance: Decimal = Decimal("0")
    variance_reason: Optional[str] = None
    total_bookings: int = 0
    cash_bookings: int = 0
    digital_bookings: int = 0
    pending_bookings: int = 0
    total_revenue: Decimal = Decimal("0")
    target_revenue: Decimal = Decimal("0")
    achievement_percentage: float = 0.0
    no_show_count: int = 0
    no_show_revenue_loss: Decimal = Decimal("0")
    status: SettlementStatus = SettlementStatus.DRAFT
    built_by: Optional[str] = None
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    is_locked: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CounterSummary(Entity):
    """Live view of a counter's takings, before any settlement is built."""

    counter_id: str
    date: date
    shift: Optional[Shift] = None
    cash_collected: Decimal = Decimal("0")
    digital_collected: Decimal = Decimal("0")
    total_revenue: Decimal = Decimal("0")
    booking_count: int = 0
    pending_count: int = 0
    collected_count: int = 0
    completed_count: int = 0
    no_show_count: int = 0
    cancelled_count: int = 0
