"""
services/catalog/router.py
Seva catalog administration: define, edit and retire services.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status

from shared.dependencies import Container, get_container
from shared.middleware.auth import Operator, require_operator
from shared.schemas.entities import ServiceDefinition
from shared.schemas.schemas import (
    ERROR_RESPONSES,
    ServiceCreateRequest,
    ServiceResponse,
    ServiceUpdateRequest,
)

router = APIRouter(prefix="/services", tags=["Services"], responses=ERROR_RESPONSES)


@router.post("", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    data: ServiceCreateRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    definition = ServiceDefinition.model_validate(data.model_dump())
    return await container.catalog.create_service(definition)


@router.get("", response_model=List[ServiceResponse])
async def list_services(container: Container = Depends(get_container)):
    """Active services only; retired ones stay readable by id."""
    return await container.catalog.list_active_services()


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: UUID, container: Container = Depends(get_container)):
    return await container.catalog.get_service(service_id)


@router.patch("/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: UUID,
    data: ServiceUpdateRequest,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    """Changes apply to slots generated from now on; existing slots keep their snapshot."""
    return await container.catalog.update_service(service_id, data.model_dump(exclude_unset=True))


@router.post("/{service_id}/deactivate", response_model=ServiceResponse)
async def deactivate_service(
    service_id: UUID,
    operator: Operator = Depends(require_operator),
    container: Container = Depends(get_container),
):
    return await container.catalog.deactivate_service(service_id)
