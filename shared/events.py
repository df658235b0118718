"""
shared/events.py
Domain event emitter. Booking and settlement changes are published here for
downstream consumers (receipt printers, dashboards).

The Redis bus pushes JSON events onto a list; a circuit breaker stops the
engine hammering Redis while it is down. Publishing never fails the caller.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pybreaker import CircuitBreaker, CircuitBreakerError
from pydantic import BaseModel, Field

from config.settings import settings

logger = logging.getLogger(__name__)


class DomainEvent(BaseModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus(ABC):
    @abstractmethod
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryEventBus(EventBus):
    """Keeps every event in order; handlers are called synchronously."""

    def __init__(self) -> None:
        self.events: List[DomainEvent] = []
        self._handlers: List[Callable[[DomainEvent], None]] = []

    def subscribe(self, handler: Callable[[DomainEvent], None]) -> None:
        self._handlers.append(handler)

    def of_type(self, event_type: str) -> List[DomainEvent]:
        return [e for e in self.events if e.type == event_type]

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        event = DomainEvent(type=event_type, payload=payload)
        self.events.append(event)
        for handler in self._handlers:
            handler(event)


class RedisEventBus(EventBus):
    def __init__(
        self,
        client_factory: Callable[[], Any],
        queue_key: str = settings.EVENT_QUEUE_KEY,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._client_factory = client_factory
        self._queue_key = queue_key
        self._breaker = breaker or CircuitBreaker(
            fail_max=settings.EVENT_BREAKER_FAIL_MAX,
            reset_timeout=settings.EVENT_BREAKER_RESET_SECONDS,
            name="redis-events",
        )

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        event = DomainEvent(type=event_type, payload=payload)
        try:
            with self._breaker.calling():
                await self._client_factory().rpush(self._queue_key, event.model_dump_json())
            logger.info(f"Event emitted: {event_type} → {self._queue_key}")
        except CircuitBreakerError:
            logger.warning(f"Event bus circuit open, dropped {event_type}")
        except Exception as e:
            logger.error(f"Failed to emit event {event_type}: {e}")


def event_payload(**fields: Any) -> Dict[str, Any]:
    """JSON-safe payload: UUIDs, dates and Decimals become strings."""
    return json.loads(json.dumps(fields, default=str))
