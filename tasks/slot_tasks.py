"""
tasks/slot_tasks.py
Periodic housekeeping for the counters:
- Rolling slot generation over the booking horizon
- Unpaid no-show sweep for slots that have ended

Both tasks are idempotent. Each run gets its own NullPool engine so no
connection outlives the event loop asyncio.run creates for it.
"""

import asyncio
import logging

import redis.asyncio as aioredis

from config.database import build_engine, build_session_factory
from config.settings import settings
from shared.dependencies import Container, sql_container
from shared.events import EventBus, InMemoryEventBus, RedisEventBus
from shared.utils.clock import business_now
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _with_container(work):
    engine = build_engine(use_null_pool=True)
    redis = None
    events: EventBus = InMemoryEventBus()
    if settings.EVENT_BUS == "redis":
        redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        events = RedisEventBus(lambda: redis)
    try:
        container = sql_container(build_session_factory(engine), events=events)
        return await work(container)
    finally:
        if redis is not None:
            await redis.aclose()
        await engine.dispose()


async def _generate(container: Container) -> int:
    created = await container.allocator.generate_horizon(
        business_now().date(), settings.SLOT_HORIZON_DAYS
    )
    return len(created)


async def _sweep(container: Container) -> int:
    swept = await container.ledger.sweep_unpaid_no_shows(business_now())
    return len(swept)


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def generate_rolling_slots(self):
    """Materialize slots for every active service over the next SLOT_HORIZON_DAYS."""
    try:
        count = asyncio.run(_with_container(_generate))
    except Exception as exc:
        logger.error(f"generate_rolling_slots failed: {exc}")
        raise self.retry(exc=exc)
    logger.info(f"generate_rolling_slots: created {count} slots")
    return {"created": count}


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def sweep_unpaid_no_shows(self):
    try:
        count = asyncio.run(_with_container(_sweep))
    except Exception as exc:
        logger.error(f"sweep_unpaid_no_shows failed: {exc}")
        raise self.retry(exc=exc)
    logger.info(f"sweep_unpaid_no_shows: marked {count} bookings")
    return {"marked": count}
