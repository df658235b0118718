"""
services/settlement/router.py
End-of-shift counter settlement: build, submit the cash count, lock.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from shared.dependencies import Container, get_container
from shared.middleware.auth import Operator, require_operator
from shared.schemas.entities import Shift
from shared.schemas.schemas import (
    ERROR_RESPONSES,
    CounterSummaryResponse,
    SettlementBuildRequest,
    SettlementResponse,
    SettlementSubmitRequest,
)

router = APIRouter(prefix="/settlements", tags=["Settlements"], responses=ERROR_RESPONSES)


@router.post("", response_model=SettlementResponse, status_code=status.HTTP_201_CREATED)
async def build_settlement(
    data: SettlementBuildRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """Build the DRAFT settlement of a counter shift, or refresh an existing draft."""
    counter_id = data.counter_id or operator.counter_id
    if not counter_id:
        raise HTTPException(status_code=400, detail="counter_id is required")
    return await container.reconciler.build_settlement(
        counter_id,
        data.date,
        Shift(data.shift),
        data.opening_balance,
        user_id=operator.user_id,
        counter_name=data.counter_name or operator.counter_name,
        target_revenue=data.target_revenue,
    )


@router.get("/counters/{counter_id}/summary", response_model=CounterSummaryResponse)
async def counter_summary(
    counter_id: str,
    day: date = Query(..., alias="date"),
    shift: Optional[Shift] = None,
    container: Container = Depends(get_container),
):
    return await container.reconciler.summarize_counter(counter_id, day, shift)


@router.get("/{settlement_id}", response_model=SettlementResponse)
async def get_settlement(settlement_id: UUID, container: Container = Depends(get_container)):
    return await container.reconciler.get_settlement(settlement_id)


@router.post("/{settlement_id}/submit", response_model=SettlementResponse)
async def submit_settlement(
    settlement_id: UUID,
    data: SettlementSubmitRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """DRAFT → SUBMITTED with the operator's physical cash count."""
    return await container.reconciler.submit_settlement(
        settlement_id, data.physical_cash_count, operator.user_id, data.variance_reason
    )


@router.post("/{settlement_id}/lock", response_model=SettlementResponse)
async def lock_settlement(
    settlement_id: UUID,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """SUBMITTED → LOCKED. The calling user is recorded as the approver."""
    return await container.reconciler.lock_settlement(settlement_id, operator.user_id)
