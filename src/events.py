"""
Change Notifications - In-memory pub/sub for resource change events.

Resource stores publish an event for every create, update and delete; the
association registry consumes them to decide which primaries to reconcile.
Semantics follow the Kubernetes watch API.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    Optional,
    Set,
    Tuple,
)

from resources import Resource, ResourceID

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of resource change events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class ResourceEvent:
    """A change to one resource, addressed by (kind, namespace, name)."""

    event_type: EventType
    kind: str
    name: str
    namespace: Optional[str]
    resource: Optional[Resource]
    timestamp: str

    @property
    def resource_id(self) -> ResourceID:
        return ResourceID(name=self.name, namespace=self.namespace)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "kind": self.kind,
            "name": self.name,
            "namespace": self.namespace,
            "resource": self.resource.to_dict() if self.resource else None,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_resource(
        cls,
        event_type: EventType,
        resource: Resource,
    ) -> "ResourceEvent":
        """
        Create an event carrying a snapshot of ``resource``.

        Args:
            event_type: The type of event.
            resource: The resource as stored after the change.

        Returns:
            A new ResourceEvent instance.
        """
        return cls(
            event_type=event_type,
            kind=resource.kind,
            name=resource.name,
            namespace=resource.namespace,
            resource=resource.copy(),
            timestamp=datetime.utcnow().isoformat() + "Z",
        )


class EventSubscription:
    """
    Async iterator over the events delivered to one subscriber.

    Events whose kind is not in ``kinds`` (when given) or that fail
    ``filter_fn`` are skipped. A ``None`` sentinel ends iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        kinds: Optional[Set[str]] = None,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ):
        self._queue = queue
        self._kinds = kinds
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ResourceEvent]:
        return self

    def _accepts(self, event: ResourceEvent) -> bool:
        if self._kinds is not None and event.kind not in self._kinds:
            return False
        return self._filter_fn is None or self._filter_fn(event)

    async def __anext__(self) -> ResourceEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._accepts(event):
                return event


class EventBus:
    """
    In-memory pub/sub bus for resource change events.

    One bounded ``asyncio.Queue`` per subscriber. Publishing never blocks:
    when a subscriber's queue is full the event is dropped for that
    subscriber and a warning is logged. A periodic resync covers the loss.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ResourceEvent) -> None:
        """Deliver ``event`` to every current subscriber."""
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for "
                    f"{event.kind} {event.resource_id} "
                    f"(subscriber {subscriber_id}): queue full"
                )

    async def subscribe(
        self,
        kinds: Optional[Iterable[str]] = None,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            kinds: Only deliver events for these resource kinds.
            filter_fn: Optional extra predicate applied to each event.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        kind_set = set(kinds) if kinds is not None else None
        logger.info(
            f"New event subscriber {subscriber_id} "
            f"(kinds: {', '.join(sorted(kind_set)) if kind_set else 'all'})"
        )
        return subscriber_id, EventSubscription(queue, kind_set, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and end its iterator with a ``None`` sentinel.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is None:
            return

        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            # Make room for the sentinel; the subscriber is going away anyway
            queue.get_nowait()
            queue.put_nowait(None)
        logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
