"""
Resource Store - The external store collaborator the operator reads and writes.

All state lives in a store addressed by (kind, namespace, name). The core
only talks to the abstract ResourceStore interface; InMemoryResourceStore
backs tests and local runs, db.DatabaseResourceStore backs PostgreSQL.
"""

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from events import EventBus, EventType, ResourceEvent
from resources import Resource

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A call to the resource store failed."""


class ResourceNotFoundError(StoreError):
    """The addressed resource does not exist."""


class ResourceConflictError(StoreError):
    """The write conflicts with the stored state (duplicate key or stale version)."""


def merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a JSON merge patch (RFC 7386) and return the merged copy.

    Nested dicts are merged recursively; a ``None`` value removes the key.
    """
    result = copy.deepcopy(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_patch(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class LabelSelector:
    """
    Equality-based label selector.

    Terms are comma separated: ``key=value``, ``key==value``,
    ``key!=value``, ``key`` (label present) and ``!key`` (label absent).
    An empty selector matches every resource.
    """

    def __init__(self, terms: Optional[List[Tuple[str, str, Optional[str]]]] = None):
        self.terms = terms or []

    @classmethod
    def parse(cls, selector: Optional[str]) -> "LabelSelector":
        """
        Parse a selector string.

        Raises:
            ValueError: If a term is malformed.
        """
        terms: List[Tuple[str, str, Optional[str]]] = []
        if not selector:
            return cls(terms)

        for raw in selector.split(","):
            term = raw.strip()
            if not term:
                continue
            if "!=" in term:
                key, value = term.split("!=", 1)
                terms.append((key.strip(), "!=", value.strip()))
            elif "==" in term:
                key, value = term.split("==", 1)
                terms.append((key.strip(), "=", value.strip()))
            elif "=" in term:
                key, value = term.split("=", 1)
                terms.append((key.strip(), "=", value.strip()))
            elif term.startswith("!"):
                terms.append((term[1:].strip(), "!", None))
            else:
                terms.append((term, "exists", None))

        for key, _, _ in terms:
            if not key:
                raise ValueError(f"Invalid label selector: {selector!r}")
        return cls(terms)

    def matches(self, labels: Optional[Dict[str, str]]) -> bool:
        labels = labels or {}
        for key, op, value in self.terms:
            if op == "=" and labels.get(key) != value:
                return False
            if op == "!=" and labels.get(key) == value:
                return False
            if op == "exists" and key not in labels:
                return False
            if op == "!" and key in labels:
                return False
        return True

    def __str__(self) -> str:
        parts = []
        for key, op, value in self.terms:
            if op == "exists":
                parts.append(key)
            elif op == "!":
                parts.append(f"!{key}")
            else:
                parts.append(f"{key}{op}{value}")
        return ",".join(parts)


class ResourceStore(ABC):
    """
    Abstract interface to the external resource store.

    Every method is a suspension point for the reconcile pass that calls
    it. Failures raise StoreError subclasses (or the backend's own errors)
    and are never retried here.
    """

    @abstractmethod
    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Optional[Resource]:
        """Fetch a resource, or None if it does not exist."""
        pass

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Resource]:
        """List resources of a kind, optionally scoped to a namespace and selector."""
        pass

    @abstractmethod
    async def create(self, resource: Resource) -> Resource:
        """Create a resource and return it as stored."""
        pass

    @abstractmethod
    async def update(self, resource: Resource) -> Resource:
        """Replace spec, data, labels and owner references. Status is left alone."""
        pass

    @abstractmethod
    async def update_status(self, resource: Resource) -> Resource:
        """Replace only the status of a resource."""
        pass

    @abstractmethod
    async def patch(self, resource: Resource) -> Resource:
        """Merge-patch spec, data and labels of a resource."""
        pass

    @abstractmethod
    async def patch_status(self, resource: Resource) -> Resource:
        """Merge-patch the status of a resource."""
        pass

    @abstractmethod
    async def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        """Delete one resource. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def delete_by_selector(
        self, kind: str, namespace: Optional[str], label_selector: str
    ) -> int:
        """Delete every resource of a kind in a namespace matching the selector."""
        pass


@dataclass(frozen=True)
class StoreOperation:
    """One write or read recorded by InMemoryResourceStore."""

    verb: str
    kind: str
    name: Optional[str]
    namespace: Optional[str]


StoreKey = Tuple[str, str, str]


class InMemoryResourceStore(ResourceStore):
    """
    Dict-backed resource store.

    Stores deep copies keyed by (kind, namespace, name), assigns uid and
    resource_version, keeps a history of operations and publishes change
    events to an optional EventBus.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._resources: Dict[StoreKey, Resource] = {}
        self._event_bus = event_bus
        self.history: List[StoreOperation] = []

    @staticmethod
    def _key(kind: str, name: str, namespace: Optional[str]) -> StoreKey:
        return (kind, namespace or "", name)

    def _record(self, verb: str, kind: str, name: Optional[str], namespace: Optional[str]):
        self.history.append(StoreOperation(verb, kind, name, namespace))

    def operations(
        self, verb: Optional[str] = None, kind: Optional[str] = None
    ) -> List[StoreOperation]:
        """Return recorded operations, optionally filtered by verb and kind."""
        return [
            op
            for op in self.history
            if (verb is None or op.verb == verb) and (kind is None or op.kind == kind)
        ]

    def clear_history(self) -> None:
        self.history.clear()

    async def _publish(self, event_type: EventType, resource: Resource) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(ResourceEvent.from_resource(event_type, resource))

    def _existing(self, resource: Resource) -> Resource:
        key = self._key(resource.kind, resource.name, resource.namespace)
        stored = self._resources.get(key)
        if stored is None:
            raise ResourceNotFoundError(
                f"{resource.kind} {resource.resource_id} not found"
            )
        if (
            resource.resource_version is not None
            and resource.resource_version != stored.resource_version
        ):
            raise ResourceConflictError(
                f"{resource.kind} {resource.resource_id} was modified "
                f"(version {resource.resource_version} != {stored.resource_version})"
            )
        return stored

    async def _commit(self, stored: Resource, event_type: EventType) -> Resource:
        stored.resource_version = (stored.resource_version or 0) + 1
        self._resources[self._key(stored.kind, stored.name, stored.namespace)] = stored
        await self._publish(event_type, stored)
        return stored.copy()

    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Optional[Resource]:
        self._record("get", kind, name, namespace)
        stored = self._resources.get(self._key(kind, name, namespace))
        return stored.copy() if stored is not None else None

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Resource]:
        self._record("list", kind, None, namespace)
        selector = LabelSelector.parse(label_selector)
        return [
            resource.copy()
            for (stored_kind, stored_ns, _), resource in sorted(self._resources.items())
            if stored_kind == kind
            and (namespace is None or stored_ns == namespace)
            and selector.matches(resource.labels)
        ]

    async def create(self, resource: Resource) -> Resource:
        self._record("create", resource.kind, resource.name, resource.namespace)
        key = self._key(resource.kind, resource.name, resource.namespace)
        if key in self._resources:
            raise ResourceConflictError(
                f"{resource.kind} {resource.resource_id} already exists"
            )
        stored = resource.copy()
        stored.uid = str(uuid.uuid4())
        stored.resource_version = 0
        return await self._commit(stored, EventType.CREATED)

    async def update(self, resource: Resource) -> Resource:
        self._record("update", resource.kind, resource.name, resource.namespace)
        stored = self._existing(resource).copy()
        stored.spec = copy.deepcopy(resource.spec)
        stored.data = copy.deepcopy(resource.data)
        stored.labels = dict(resource.labels)
        stored.owner_references = copy.deepcopy(resource.owner_references)
        return await self._commit(stored, EventType.MODIFIED)

    async def update_status(self, resource: Resource) -> Resource:
        self._record("update_status", resource.kind, resource.name, resource.namespace)
        stored = self._existing(resource).copy()
        stored.status = copy.deepcopy(resource.status)
        return await self._commit(stored, EventType.MODIFIED)

    async def patch(self, resource: Resource) -> Resource:
        self._record("patch", resource.kind, resource.name, resource.namespace)
        stored = self._existing(resource).copy()
        stored.spec = merge_patch(stored.spec, resource.spec)
        stored.data = merge_patch(stored.data, resource.data)
        stored.labels = merge_patch(stored.labels, resource.labels)
        if resource.owner_references:
            stored.owner_references = copy.deepcopy(resource.owner_references)
        return await self._commit(stored, EventType.MODIFIED)

    async def patch_status(self, resource: Resource) -> Resource:
        self._record("patch_status", resource.kind, resource.name, resource.namespace)
        stored = self._existing(resource).copy()
        stored.status = merge_patch(stored.status, resource.status)
        return await self._commit(stored, EventType.MODIFIED)

    async def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        self._record("delete", kind, name, namespace)
        removed = self._resources.pop(self._key(kind, name, namespace), None)
        if removed is None:
            return False
        await self._publish(EventType.DELETED, removed)
        return True

    async def delete_by_selector(
        self, kind: str, namespace: Optional[str], label_selector: str
    ) -> int:
        self._record("delete_by_selector", kind, None, namespace)
        selector = LabelSelector.parse(label_selector)
        doomed = [
            key
            for key, resource in self._resources.items()
            if key[0] == kind
            and key[1] == (namespace or "")
            and selector.matches(resource.labels)
        ]
        for key in doomed:
            removed = self._resources.pop(key)
            await self._publish(EventType.DELETED, removed)
        if doomed:
            logger.info(
                f"Deleted {len(doomed)} {kind} resource(s) in "
                f"{namespace or '<cluster>'} matching '{label_selector}'"
            )
        return len(doomed)

    # Test/bootstrap helper: seed a resource without recording an operation
    def seed(self, resource: Resource) -> Resource:
        stored = resource.copy()
        stored.uid = stored.uid or str(uuid.uuid4())
        stored.resource_version = stored.resource_version or 1
        self._resources[self._key(stored.kind, stored.name, stored.namespace)] = stored
        return stored.copy()
