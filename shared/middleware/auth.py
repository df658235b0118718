"""
shared/middleware/auth.py
Operator identity for counter requests.
The gateway authenticates staff and forwards X-User-* / X-Counter-* headers;
this service trusts them and only checks they are present.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status


@dataclass
class Operator:
    user_id: Optional[str]
    counter_id: Optional[str] = None
    counter_name: Optional[str] = None


async def get_operator(
    x_user_id: Optional[str] = Header(None),
    x_counter_id: Optional[str] = Header(None),
    x_counter_name: Optional[str] = Header(None),
) -> Operator:
    return Operator(user_id=x_user_id, counter_id=x_counter_id, counter_name=x_counter_name)


async def require_operator(operator: Operator = Depends(get_operator)) -> Operator:
    """Dependency: any mutating call must name the acting user."""
    if not operator.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return operator


async def require_counter(operator: Operator = Depends(require_operator)) -> Operator:
    """Dependency: booking desk calls must also identify the counter."""
    if not operator.counter_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Counter-Id header is required",
        )
    return operator
