"""
shared/dependencies.py
Wires repositories, event bus and the four engine components together.
The app keeps one Container on app.state; routers reach it via get_container.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import AsyncSessionLocal
from config.redis_client import get_redis
from config.settings import settings
from services.booking.ledger import BookingLedger
from services.catalog.catalog import ServiceCatalog
from services.settlement.estimators import NoShowLossEstimator
from services.settlement.reconciler import SettlementReconciler
from services.slots.allocator import SlotAllocator
from shared.events import EventBus, InMemoryEventBus, RedisEventBus
from shared.repositories.memory import (
    InMemoryBookingRepository,
    InMemoryServiceRepository,
    InMemorySettlementRepository,
    InMemorySlotRepository,
)
from shared.repositories.ports import (
    BookingRepository,
    ServiceRepository,
    SettlementRepository,
    SlotRepository,
)
from shared.repositories.sql import (
    SqlBookingRepository,
    SqlServiceRepository,
    SqlSettlementRepository,
    SqlSlotRepository,
)
from shared.utils.clock import Clock, business_now


@dataclass
class Container:
    catalog: ServiceCatalog
    allocator: SlotAllocator
    ledger: BookingLedger
    reconciler: SettlementReconciler
    events: EventBus


def build_container(
    *,
    services: ServiceRepository,
    slots: SlotRepository,
    bookings: BookingRepository,
    settlements: SettlementRepository,
    events: EventBus,
    now: Clock = business_now,
    estimator: Optional[NoShowLossEstimator] = None,
    conflict_retries: int = settings.BOOKING_CONFLICT_RETRIES,
    retry_backoff: float = settings.BOOKING_RETRY_BACKOFF_SECONDS,
) -> Container:
    allocator = SlotAllocator(services, slots, now=now)
    return Container(
        catalog=ServiceCatalog(services, now=now),
        allocator=allocator,
        ledger=BookingLedger(
            bookings,
            allocator,
            settlements,
            events,
            now=now,
            conflict_retries=conflict_retries,
            retry_backoff=retry_backoff,
        ),
        reconciler=SettlementReconciler(settlements, bookings, estimator=estimator, now=now),
        events=events,
    )


def memory_container(now: Clock = business_now, **options) -> Container:
    slots = InMemorySlotRepository()
    return build_container(
        services=InMemoryServiceRepository(),
        slots=slots,
        bookings=InMemoryBookingRepository(slots),
        settlements=InMemorySettlementRepository(),
        events=options.pop("events", None) or InMemoryEventBus(),
        now=now,
        **options,
    )


def sql_container(
    session_factory: async_sessionmaker[AsyncSession], now: Clock = business_now, **options
) -> Container:
    return build_container(
        services=SqlServiceRepository(session_factory),
        slots=SqlSlotRepository(session_factory),
        bookings=SqlBookingRepository(session_factory),
        settlements=SqlSettlementRepository(session_factory),
        events=options.pop("events", None) or InMemoryEventBus(),
        now=now,
        **options,
    )


def container_from_settings() -> Container:
    """Default wiring for the running app and the worker."""
    events: EventBus = (
        RedisEventBus(get_redis) if settings.EVENT_BUS == "redis" else InMemoryEventBus()
    )
    if settings.STORE_BACKEND == "memory":
        return memory_container(events=events)
    return sql_container(AsyncSessionLocal, events=events)


def get_container(request: Request) -> Container:
    return request.app.state.container
