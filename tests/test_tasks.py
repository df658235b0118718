"""
tests/test_tasks.py
Worker task bodies, run directly against an in-memory container.
"""

from datetime import time

import pytest

from tasks.celery_app import celery_app
from tasks.slot_tasks import _generate, _sweep
from tests.factories import TODAY, book, make_service, service_with_slot


def test_beat_schedule_registers_housekeeping():
    schedule = celery_app.conf.beat_schedule
    assert schedule["generate-rolling-slots"]["task"] == "tasks.slot_tasks.generate_rolling_slots"
    assert schedule["sweep-unpaid-no-shows"]["schedule"] == 900


@pytest.mark.asyncio
async def test_generate_covers_the_horizon(container):
    await container.catalog.create_service(make_service())
    first = await _generate(container)
    assert first == 7
    assert await _generate(container) == 0


@pytest.mark.asyncio
async def test_sweep_marks_ended_unpaid_bookings(container, clock, monkeypatch):
    _, slot = await service_with_slot(container, capacity=5)
    await book(container, slot.id)
    clock.set(TODAY, time(12, 0))
    monkeypatch.setattr("tasks.slot_tasks.business_now", clock)

    assert await _sweep(container) == 1
    assert await _sweep(container) == 0
