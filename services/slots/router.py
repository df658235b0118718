"""
services/slots/router.py
Slot generation and availability for the booking desk.
"""

from datetime import date, timedelta
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from config.settings import settings
from shared.dependencies import Container, get_container
from shared.middleware.auth import Operator, require_operator
from shared.schemas.entities import SlotInstance
from shared.schemas.schemas import ERROR_RESPONSES, SlotCloseRequest, SlotGenerateRequest, SlotResponse

router = APIRouter(prefix="/slots", tags=["Slots"], responses=ERROR_RESPONSES)


def _slot_response(slot: SlotInstance) -> SlotResponse:
    return SlotResponse(
        id=slot.id,
        service_id=slot.service_id,
        service_name=slot.rules.name,
        date=slot.date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        capacity=slot.capacity,
        booked_count=slot.booked_count,
        available_count=slot.available_count,
        walk_in_reserved=slot.walk_in_reserved,
        status=slot.status.value,
        version=slot.version,
        override_allowed=slot.override_allowed,
        is_closed=slot.is_closed,
        closed_reason=slot.closed_reason,
        price=slot.rules.price,
    )


@router.post("/generate", response_model=List[SlotResponse], status_code=status.HTTP_201_CREATED)
async def generate_slots(
    data: SlotGenerateRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """
    Materialize slots. With a service_id, covers start_date..end_date (or
    `days` from start_date); without one, the rolling horizon for every
    active service. Already-materialized slots are skipped.
    """
    days = data.days if data.days is not None else settings.SLOT_HORIZON_DAYS
    if data.service_id is None:
        created = await container.allocator.generate_horizon(data.start_date, days)
    else:
        end_date = data.end_date or data.start_date + timedelta(days=days - 1)
        created = await container.allocator.generate_slots(data.service_id, data.start_date, end_date)
    return [_slot_response(s) for s in created]


@router.get("", response_model=List[SlotResponse])
async def list_slots(
    service_id: UUID,
    day: date = Query(..., alias="date"),
    include_unavailable: bool = False,
    container: Container = Depends(get_container),
):
    if include_unavailable:
        slots = await container.allocator.list_slots(service_id, day)
    else:
        slots = await container.allocator.list_available_slots(service_id, day)
    return [_slot_response(s) for s in slots]


@router.get("/{slot_id}", response_model=SlotResponse)
async def get_slot(slot_id: UUID, container: Container = Depends(get_container)):
    return _slot_response(await container.allocator.get_slot(slot_id))


@router.post("/{slot_id}/close", response_model=SlotResponse)
async def close_slot(
    slot_id: UUID,
    data: SlotCloseRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    slot = await container.allocator.close_slot(slot_id, operator.user_id, data.reason)
    return _slot_response(slot)


@router.post("/{slot_id}/reopen", response_model=SlotResponse)
async def reopen_slot(
    slot_id: UUID,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    return _slot_response(await container.allocator.reopen_slot(slot_id, operator.user_id))
