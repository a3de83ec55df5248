"""
Association Registry - Maps secondary resource changes back to primaries.

Each secondary kind is registered once, with the strategy used to find the
owning primary of a changed secondary:

- ownership-derived: the secondary carries an owner reference to its primary
- explicit mapping: a pure function primary ID -> expected secondary ID,
  together with its inverse on secondary IDs

Notifications that resolve to no primary are logged and dropped.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator, Callable, Dict, List, Optional, Set

from events import EventBus, EventType, ResourceEvent
from resources import ResourceID
from store import LabelSelector

if TYPE_CHECKING:
    from dependent import DependentResource

logger = logging.getLogger(__name__)


class AssociationResolutionError(LookupError):
    """A secondary notification could not be mapped to an owning primary."""


class SecondaryToPrimaryMapper(ABC):
    """Strategy resolving a secondary change event to primary identities."""

    @abstractmethod
    def to_primary_ids(self, event: ResourceEvent) -> Set[ResourceID]:
        """
        Resolve the primaries owning the secondary in ``event``.

        Raises:
            AssociationResolutionError: If no owning primary can be found.
        """
        pass


class OwnerReferenceMapper(SecondaryToPrimaryMapper):
    """Resolves through the owner references a secondary carries."""

    def __init__(self, primary_kind: str):
        self.primary_kind = primary_kind

    def to_primary_ids(self, event: ResourceEvent) -> Set[ResourceID]:
        resource = event.resource
        if resource is None:
            raise AssociationResolutionError(
                f"{event.kind} {event.resource_id} event carries no resource"
            )

        owners = {
            ResourceID(name=ref.name, namespace=resource.namespace)
            for ref in resource.owner_references
            if ref.kind == self.primary_kind
        }
        if not owners:
            raise AssociationResolutionError(
                f"{event.kind} {event.resource_id} has no {self.primary_kind} owner"
            )
        return owners


class PrimaryToSecondaryMapper(SecondaryToPrimaryMapper):
    """
    Resolves through an explicit primary -> secondary identity function.

    ``secondary_id_for`` must be total, deterministic and depend only on the
    primary's identity. ``primary_id_for`` is its inverse on secondary
    identities, returning None for names the mapping never produces. Both
    are fixed at construction and the mapper holds no other state.
    """

    def __init__(
        self,
        secondary_id_for: Callable[[ResourceID], ResourceID],
        primary_id_for: Callable[[ResourceID], Optional[ResourceID]],
    ):
        self._secondary_id_for = secondary_id_for
        self._primary_id_for = primary_id_for

    def secondary_id(self, primary_id: ResourceID) -> ResourceID:
        return self._secondary_id_for(primary_id)

    def to_primary_ids(self, event: ResourceEvent) -> Set[ResourceID]:
        primary_id = self._primary_id_for(event.resource_id)
        if primary_id is None or self.secondary_id(primary_id) != event.resource_id:
            raise AssociationResolutionError(
                f"No primary maps to {event.kind} {event.resource_id}"
            )
        return {primary_id}


@dataclass
class Registration:
    """How notifications for one secondary kind are resolved."""

    kind: str
    mapper: SecondaryToPrimaryMapper
    selector: LabelSelector


class AssociationRegistry:
    """
    Registry of secondary kinds watched on behalf of one primary kind.

    Registrations are made when the controller is set up and are not
    changed per event.
    """

    def __init__(self, primary_kind: str):
        self.primary_kind = primary_kind
        self._registrations: Dict[str, Registration] = {}

    def register(
        self,
        kind: str,
        mapper: Optional[SecondaryToPrimaryMapper] = None,
        label_selector: Optional[str] = None,
    ) -> None:
        """
        Register a secondary kind.

        Args:
            kind: The secondary resource kind.
            mapper: Resolution strategy; defaults to owner references.
            label_selector: Only notifications for secondaries matching
                this selector are considered.

        Raises:
            ValueError: If ``kind`` is the primary kind or the selector
                is malformed.
        """
        if kind == self.primary_kind:
            raise ValueError(
                f"Kind '{kind}' is the primary kind and cannot be registered "
                f"as a secondary"
            )

        if kind in self._registrations:
            logger.warning(f"Overwriting existing association for kind: {kind}")

        self._registrations[kind] = Registration(
            kind=kind,
            mapper=mapper or OwnerReferenceMapper(self.primary_kind),
            selector=LabelSelector.parse(label_selector),
        )
        logger.info(
            f"Registered {kind} as secondary of {self.primary_kind} "
            f"({type(self._registrations[kind].mapper).__name__}"
            f"{', selector: ' + label_selector if label_selector else ''})"
        )

    def register_dependent(self, dependent: "DependentResource") -> None:
        """Register a dependent resource's kind, strategy and selector."""
        self.register(
            dependent.kind,
            mapper=dependent.association_mapper(self.primary_kind),
            label_selector=dependent.config.label_selector,
        )

    def kinds(self) -> List[str]:
        """List registered secondary kinds."""
        return list(self._registrations.keys())

    def has_registration(self, kind: str) -> bool:
        return kind in self._registrations

    def get_mapper(self, kind: str) -> Optional[SecondaryToPrimaryMapper]:
        registration = self._registrations.get(kind)
        return registration.mapper if registration else None

    def resolve(self, event: ResourceEvent) -> Set[ResourceID]:
        """
        Resolve a change notification to the primaries that need reconciling.

        Primary events resolve to themselves (deletions resolve to nothing).
        Secondary events go through the kind's strategy. Unresolvable or
        out-of-scope notifications resolve to an empty set.
        """
        if event.kind == self.primary_kind:
            if event.event_type == EventType.DELETED:
                return set()
            return {event.resource_id}

        registration = self._registrations.get(event.kind)
        if registration is None:
            logger.debug(f"Ignoring event for unregistered kind {event.kind}")
            return set()

        if event.resource is not None and not registration.selector.matches(
            event.resource.labels
        ):
            logger.debug(
                f"Ignoring {event.kind} {event.resource_id}: outside selector "
                f"'{registration.selector}'"
            )
            return set()

        try:
            return registration.mapper.to_primary_ids(event)
        except AssociationResolutionError as e:
            logger.warning(f"Dropping {event.event_type.value} notification: {e}")
            return set()

    async def watch(self, event_bus: EventBus) -> AsyncIterator[ResourceID]:
        """
        Stream the primary IDs to reconcile, one per resolved notification.

        Subscribes to the primary kind and every registered secondary kind
        for as long as the iterator is consumed.
        """
        subscriber_id, subscription = await event_bus.subscribe(
            kinds=[self.primary_kind, *self.kinds()]
        )
        try:
            async for event in subscription:
                for primary_id in sorted(self.resolve(event), key=str):
                    yield primary_id
        finally:
            await event_bus.unsubscribe(subscriber_id)
