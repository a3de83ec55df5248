"""
Dependent Resources - Per-kind controllers for secondary resources.

A dependent resource computes the desired form of one secondary from its
primary, fetches the actual form from the store and converges it: create
when absent, update when different, nothing otherwise. Desired state is
recomputed every pass and nothing is remembered between passes. The value
reconciled in a pass is recorded on that pass's Context, where
get_resource() reads it for composition.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from association import OwnerReferenceMapper, SecondaryToPrimaryMapper
from context import Context
from resources import Resource, ResourceID
from store import ResourceStore

logger = logging.getLogger(__name__)


class Operation(Enum):
    """What a dependent reconcile did to its secondary."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class DependentResult:
    """Result from a dependent resource's reconcile() call."""

    operation: Operation
    resource: Resource


@dataclass
class DependentResourceConfig:
    """Registration-time configuration of a dependent resource."""

    # Scopes which secondaries' change notifications are considered
    label_selector: Optional[str] = None


class DependentResource(ABC):
    """
    Abstract base class for dependent resource controllers.

    Subclasses set ``kind`` and implement desired/actual/create/update.
    ``match`` decides whether actual already equals desired and may be
    overridden with a kind-specific comparison.
    """

    kind: str = ""

    def __init__(self, config: Optional[DependentResourceConfig] = None):
        self.config = config or DependentResourceConfig()

    def configure_with(self, config: DependentResourceConfig) -> None:
        self.config = config

    @abstractmethod
    def desired(self, primary: Resource, context: Context) -> Resource:
        """
        Compute the desired secondary for ``primary``.

        Must be pure: no I/O and no dependence on this kind's own actual
        state. It may read get_resource() of dependents reconciled earlier
        in the same pass.
        """
        pass

    @abstractmethod
    async def actual(self, primary: Resource, context: Context) -> Optional[Resource]:
        """Fetch the current secondary, or None if it does not exist."""
        pass

    @abstractmethod
    async def create(
        self, desired: Resource, primary: Resource, context: Context
    ) -> Resource:
        """Create the desired secondary and return it as persisted."""
        pass

    @abstractmethod
    async def update(
        self, actual: Resource, desired: Resource, primary: Resource, context: Context
    ) -> Resource:
        """
        Converge an existing secondary and return it as persisted.

        Only called when ``match`` reported a difference, so side effects
        placed here never fire for unchanged state.
        """
        pass

    def match(
        self, actual: Resource, desired: Resource, primary: Resource, context: Context
    ) -> bool:
        """
        Whether ``actual`` already satisfies ``desired``.

        Compares spec and data exactly and requires the desired labels to
        be present. Server-generated fields are ignored.
        """
        if actual.spec != desired.spec or actual.data != desired.data:
            return False
        return all(actual.labels.get(k) == v for k, v in desired.labels.items())

    def associated_secondary_id(self, primary: Resource) -> ResourceID:
        """Identity of this kind's secondary for ``primary``; same name by default."""
        return ResourceID(name=primary.name, namespace=primary.namespace)

    def association_mapper(self, primary_kind: str) -> SecondaryToPrimaryMapper:
        """Strategy used by the association registry for this kind."""
        return OwnerReferenceMapper(primary_kind)

    async def reconcile(self, primary: Resource, context: Context) -> DependentResult:
        """
        Converge this kind's secondary for ``primary``.

        Errors from the store propagate unchanged; nothing is retried here.
        """
        primary_id = primary.resource_id
        context.secondaries.pop((self, primary_id), None)

        desired = self.desired(primary, context)
        actual = await self.actual(primary, context)

        if actual is None:
            logger.info(f"Creating {self.kind} {desired.resource_id} for {primary_id}")
            result = DependentResult(
                Operation.CREATED, await self.create(desired, primary, context)
            )
        elif not self.match(actual, desired, primary, context):
            logger.info(f"Updating {self.kind} {actual.resource_id} for {primary_id}")
            result = DependentResult(
                Operation.UPDATED, await self.update(actual, desired, primary, context)
            )
        else:
            logger.debug(f"{self.kind} {actual.resource_id} is up to date")
            result = DependentResult(Operation.UNCHANGED, actual)

        context.secondaries[(self, primary_id)] = result.resource
        return result

    def get_resource(self, primary: Resource, context: Context) -> Optional[Resource]:
        """The secondary reconciled for ``primary`` earlier in this pass, if any."""
        return context.secondaries.get((self, primary.resource_id))


class StoreDependentResource(DependentResource):
    """
    Dependent resource kept in a ResourceStore.

    Fetches by associated_secondary_id(), creates with an owner reference
    to the primary and updates by merging desired onto actual.
    """

    def __init__(
        self, store: ResourceStore, config: Optional[DependentResourceConfig] = None
    ):
        super().__init__(config)
        self.store = store

    async def actual(self, primary: Resource, context: Context) -> Optional[Resource]:
        secondary_id = self.associated_secondary_id(primary)
        return await self.store.get(self.kind, secondary_id.name, secondary_id.namespace)

    async def create(
        self, desired: Resource, primary: Resource, context: Context
    ) -> Resource:
        resource = desired.copy()
        resource.add_owner_reference(primary)
        return await self.store.create(resource)

    async def update(
        self, actual: Resource, desired: Resource, primary: Resource, context: Context
    ) -> Resource:
        return await self.store.update(self.merge(actual, desired))

    def merge(self, actual: Resource, desired: Resource) -> Resource:
        """
        Overlay desired onto actual.

        Spec and data are replaced, desired labels are added, and server
        fields (uid, resource_version) and owner references come from actual.
        """
        merged = actual.copy()
        merged.spec = copy.deepcopy(desired.spec)
        merged.data = copy.deepcopy(desired.data)
        merged.labels = {**actual.labels, **desired.labels}
        return merged
