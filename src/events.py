"""
Change notifications for mapping resources.

An in-memory pub/sub bus fed by the REST API (user writes) and the
controller (reconcile outcomes). The controller listens to it to react to
changes without waiting for the next poll, and ``/api/v1/watch`` streams it
to clients as Server-Sent Events.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import MappingResource, NamespacedName

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EventType(Enum):
    """Types of resource events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"


@dataclass
class ResourceEvent:
    """Something happened to the mapping resource ``namespace/name``."""

    event_type: EventType
    namespace: str
    name: str
    resource_data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(namespace=self.namespace, name=self.name)

    def to_sse(self) -> str:
        """Format the event as an SSE message."""
        data = {
            "event_type": self.event_type.value,
            "namespace": self.namespace,
            "name": self.name,
            "resource_data": self.resource_data,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def for_resource(
        cls, event_type: EventType, resource: MappingResource
    ) -> "ResourceEvent":
        return cls(
            event_type=event_type,
            namespace=resource.namespace,
            name=resource.name,
            resource_data=resource.to_dict(),
            timestamp=_utc_timestamp(),
        )

    @classmethod
    def for_key(cls, event_type: EventType, key: NamespacedName) -> "ResourceEvent":
        """Event without resource data, e.g. for a purged resource."""
        return cls(
            event_type=event_type,
            namespace=key.namespace,
            name=key.name,
            timestamp=_utc_timestamp(),
        )


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def namespace_filter(
    namespace: Optional[str],
) -> Optional[Callable[[ResourceEvent], bool]]:
    """Build a subscription filter for one namespace (None means all)."""
    if not namespace:
        return None
    return lambda event: event.namespace == namespace


class EventSubscription:
    """
    Async iterator over the events delivered to one subscriber.

    A ``None`` sentinel in the queue ends iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ResourceEvent]:
        return self

    async def __anext__(self) -> ResourceEvent:
        while True:
            event = await self._queue.get()
            if event is None:
                raise StopAsyncIteration
            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Every subscriber has a bounded ``asyncio.Queue``. Publishing never
    blocks; events for a subscriber whose queue is full are dropped.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    async def publish(self, event: ResourceEvent) -> None:
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for {event.key} "
                    f"(subscriber {subscriber_id}): queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue
        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber and end its iterator."""
        queue = self._subscribers.pop(subscriber_id, None)
        if queue is None:
            return
        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            # Drop the oldest event to make room for the sentinel
            queue.get_nowait()
            queue.put_nowait(None)
        logger.debug(f"Unsubscribed: {subscriber_id}")

    async def close(self) -> None:
        """Unsubscribe everybody."""
        for subscriber_id in list(self._subscribers):
            await self.unsubscribe(subscriber_id)

    def subscriber_count(self) -> int:
        return len(self._subscribers)
