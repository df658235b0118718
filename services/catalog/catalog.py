"""
services/catalog/catalog.py
ServiceCatalog: defines and maintains the seva types offered at the counters.
Edits here never touch slots that are already materialized.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError

from shared.exceptions import NotFoundError, ValidationError
from shared.repositories.ports import ServiceRepository
from shared.schemas.entities import ServiceDefinition
from shared.utils.clock import Clock, business_now

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = {"id", "created_at", "updated_at"}


def validate_service(service: ServiceDefinition) -> None:
    """Raise ValidationError on the first broken service invariant."""
    if not service.name or not service.name.strip():
        raise ValidationError("Service name is required")
    if service.capacity <= 0:
        raise ValidationError("Capacity must be positive", capacity=service.capacity)
    if service.price < Decimal("0"):
        raise ValidationError("Price cannot be negative", price=str(service.price))
    if service.duration_minutes <= 0:
        raise ValidationError("Duration must be positive", duration_minutes=service.duration_minutes)
    if service.min_devotees < 1:
        raise ValidationError("At least one devotee is required", min_devotees=service.min_devotees)
    if service.min_devotees > service.max_devotees:
        raise ValidationError(
            "min_devotees cannot exceed max_devotees",
            min_devotees=service.min_devotees,
            max_devotees=service.max_devotees,
        )
    if not service.weekdays:
        raise ValidationError("At least one weekday is required")
    bad_days = [d for d in service.weekdays if d < 0 or d > 6]
    if bad_days:
        raise ValidationError("Weekdays must be between 0 (Sunday) and 6 (Saturday)", weekdays=bad_days)
    if not service.time_windows:
        raise ValidationError("At least one time window is required")
    for window in service.time_windows:
        if window.start_time >= window.end_time:
            raise ValidationError(
                "Time window must start before it ends",
                start_time=window.start_time.isoformat(),
                end_time=window.end_time.isoformat(),
            )
    ordered = sorted(service.time_windows, key=lambda w: w.start_time)
    for previous, current in zip(ordered, ordered[1:]):
        if current.start_time < previous.end_time:
            raise ValidationError(
                "Time windows overlap",
                first=f"{previous.start_time:%H:%M}-{previous.end_time:%H:%M}",
                second=f"{current.start_time:%H:%M}-{current.end_time:%H:%M}",
            )
    if not 0 <= service.walk_in.reserved_percentage <= 100:
        raise ValidationError(
            "reserved_percentage must be between 0 and 100",
            reserved_percentage=service.walk_in.reserved_percentage,
        )
    if service.advance_booking.days_ahead < 0:
        raise ValidationError("days_ahead cannot be negative")


class ServiceCatalog:
    def __init__(self, services: ServiceRepository, now: Clock = business_now):
        self._services = services
        self._now = now

    async def create_service(self, definition: ServiceDefinition) -> ServiceDefinition:
        validate_service(definition)
        timestamp = self._now()
        service = definition.model_copy(update={"created_at": timestamp, "updated_at": timestamp})
        await self._services.add(service)
        logger.info(f"Service created: {service.name} ({service.id})")
        return service

    async def get_service(self, service_id: uuid.UUID) -> ServiceDefinition:
        service = await self._services.get(service_id)
        if not service:
            raise NotFoundError("Service not found", service_id=str(service_id))
        return service

    async def update_service(self, service_id: uuid.UUID, patch: Dict[str, Any]) -> ServiceDefinition:
        current = await self.get_service(service_id)
        changes = {k: v for k, v in patch.items() if k not in IMMUTABLE_FIELDS}
        data = current.model_dump()
        data.update(changes)
        try:
            updated = ServiceDefinition.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError("Invalid service update", errors=e.errors(include_url=False)) from e
        validate_service(updated)
        updated.updated_at = self._now()
        await self._services.save(updated)
        logger.info(f"Service updated: {updated.id} fields={sorted(changes)}")
        return updated

    async def deactivate_service(self, service_id: uuid.UUID) -> ServiceDefinition:
        service = await self.get_service(service_id)
        service.is_active = False
        service.updated_at = self._now()
        await self._services.save(service)
        logger.info(f"Service deactivated: {service.id}")
        return service

    async def list_active_services(self) -> List[ServiceDefinition]:
        return await self._services.list_active()
