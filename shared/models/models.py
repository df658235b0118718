"""
shared/models/models.py
SQLAlchemy ORM tables backing the SQL repositories.
Portable column types only (Uuid, JSON) so the same schema runs on
PostgreSQL in production and SQLite locally.
"""

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base
from shared.schemas.entities import (
    AuditAction,
    BookingStatus,
    BookingType,
    PaymentMode,
    PaymentStatus,
    ServiceCategory,
    SettlementStatus,
    Shift,
)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class SevaService(TimestampMixin, Base):
    """Master list of seva types offered at the counters."""
    __tablename__ = "seva_services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    name_local: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[ServiceCategory] = mapped_column(
        Enum(ServiceCategory), nullable=False, default=ServiceCategory.OTHER
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    weekdays: Mapped[List[int]] = mapped_column(JSON, nullable=False)
    time_windows: Mapped[list] = mapped_column(JSON, nullable=False)
    # e.g. [{"start_time": "06:00:00", "end_time": "06:30:00"}, ...]
    min_devotees: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    max_devotees: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    requires_identity_attribute: Mapped[bool] = mapped_column(Boolean, default=False)
    advance_booking: Mapped[dict] = mapped_column(JSON, nullable=False)
    walk_in: Mapped[dict] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_priority: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_seva_services_active", "is_active"),)


class SevaSlot(Base):
    """
    One materialized occurrence of a seva on a date.
    booked_count only changes through a version-conditioned UPDATE.
    """
    __tablename__ = "seva_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("seva_services.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    booked_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    walk_in_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    override_allowed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    closed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    closed_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    rules: Mapped[dict] = mapped_column(JSON, nullable=False)  # ServiceSnapshot
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("service_id", "date", "start_time", "end_time", name="uq_slot_window"),
        Index("ix_seva_slots_service_date", "service_id", "date"),
    )


class SevaBooking(Base):
    """Counter booking. Service and slot data are snapshotted at creation."""
    __tablename__ = "seva_bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    receipt_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    receipt_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    slot_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("seva_slots.id"), nullable=False)
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    category: Mapped[ServiceCategory] = mapped_column(Enum(ServiceCategory), nullable=False)
    service: Mapped[dict] = mapped_column(JSON, nullable=False)   # BookedService
    devotee: Mapped[dict] = mapped_column(JSON, nullable=False)   # DevoteeInfo
    devotee_name: Mapped[str] = mapped_column(String(255), nullable=False)
    devotee_phone: Mapped[str] = mapped_column(String(20), nullable=False)

    # Payment
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_mode: Mapped[Optional[PaymentMode]] = mapped_column(Enum(PaymentMode), nullable=True)
    cash_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    digital_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    collected_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    collected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Lifecycle
    status: Mapped[BookingStatus] = mapped_column(Enum(BookingStatus), nullable=False)
    booking_type: Mapped[BookingType] = mapped_column(Enum(BookingType), nullable=False)
    counter_id: Mapped[str] = mapped_column(String(100), nullable=False)
    counter_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    shift: Mapped[Shift] = mapped_column(Enum(Shift), nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    no_show_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    no_show_marked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    no_show_marked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reprint_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_seva_bookings_scope", "counter_id", "business_date", "shift"),
        Index("ix_seva_bookings_status", "status"),
        Index("ix_seva_bookings_slot", "slot_id"),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking transitions. Rows are only ever inserted."""
    __tablename__ = "seva_booking_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("seva_bookings.id"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("ix_seva_audit_booking_id", "booking_id"),)


class ReceiptSequence(Base):
    """Durable per-(counter, date) receipt counter."""
    __tablename__ = "seva_receipt_sequences"

    counter_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    business_date: Mapped[date] = mapped_column(Date, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class SettlementRecord(Base):
    """Per-counter, per-shift settlement."""
    __tablename__ = "seva_counter_settlements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    counter_id: Mapped[str] = mapped_column(String(100), nullable=False)
    counter_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    shift: Mapped[Shift] = mapped_column(Enum(Shift), nullable=False)

    opening_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    closing_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    system_cash_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    upi_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    card_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    digital_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    physical_cash_count: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    variance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    variance_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    total_bookings: Mapped[int] = mapped_column(Integer, default=0)
    cash_bookings: Mapped[int] = mapped_column(Integer, default=0)
    digital_bookings: Mapped[int] = mapped_column(Integer, default=0)
    pending_bookings: Mapped[int] = mapped_column(Integer, default=0)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    target_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    achievement_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    no_show_count: Mapped[int] = mapped_column(Integer, default=0)
    no_show_revenue_loss: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    status: Mapped[SettlementStatus] = mapped_column(
        Enum(SettlementStatus), default=SettlementStatus.DRAFT, nullable=False
    )
    built_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    submitted_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("counter_id", "date", "shift", name="uq_settlement_scope"),
    )
