"""
Update Decisions - What the hosting runtime persists on the primary after a pass.

An UpdateControl is returned by a successful reconcile; an
ErrorStatusUpdateControl is returned by the error feedback path when the
reconcile raised.
"""

from dataclasses import dataclass
from typing import Optional

from resources import Resource


class UpdateControlError(ValueError):
    """Raised when an update decision is constructed without a resource to write."""


@dataclass(frozen=True)
class UpdateControl:
    """
    Immutable update decision for a primary resource.

    ``resource_update`` asks for a write of the primary itself,
    ``status_update`` for a write of its status. When both are set the
    runtime performs two writes: resource first, then status. ``patch``
    selects merge-patch writes instead of full updates.
    """

    resource: Optional[Resource] = None
    status_update: bool = False
    resource_update: bool = False
    patch: bool = False

    def __post_init__(self):
        if (self.status_update or self.resource_update) and self.resource is None:
            raise UpdateControlError("Resource cannot be None in case of update")

    @classmethod
    def no_update(cls) -> "UpdateControl":
        return cls()

    @classmethod
    def update_status(cls, resource: Resource) -> "UpdateControl":
        return cls(resource=resource, status_update=True)

    @classmethod
    def update_resource(cls, resource: Resource) -> "UpdateControl":
        """
        Write the primary itself, not its status.

        A reconcile normally ends with a status update; rewriting the
        resource is the exception.
        """
        return cls(resource=resource, resource_update=True)

    @classmethod
    def patch_status(cls, resource: Resource) -> "UpdateControl":
        return cls(resource=resource, status_update=True, patch=True)

    @classmethod
    def patch_resource(cls, resource: Resource) -> "UpdateControl":
        return cls(resource=resource, resource_update=True, patch=True)

    @classmethod
    def update_resource_and_status(cls, resource: Resource) -> "UpdateControl":
        return cls(resource=resource, status_update=True, resource_update=True)

    @classmethod
    def patch_resource_and_status(cls, resource: Resource) -> "UpdateControl":
        return cls(
            resource=resource, status_update=True, resource_update=True, patch=True
        )

    @property
    def is_no_update(self) -> bool:
        return not self.resource_update and not self.status_update

    @property
    def is_update_resource_and_status(self) -> bool:
        return self.resource_update and self.status_update


@dataclass(frozen=True)
class ErrorStatusUpdateControl:
    """Status-only write produced when a reconcile pass fails."""

    resource: Resource
    patch: bool = False

    def __post_init__(self):
        if self.resource is None:
            raise UpdateControlError("Resource cannot be None for an error status")

    @property
    def status_update(self) -> bool:
        return True

    @classmethod
    def update_status(cls, resource: Resource) -> "ErrorStatusUpdateControl":
        return cls(resource=resource)

    @classmethod
    def patch_status(cls, resource: Resource) -> "ErrorStatusUpdateControl":
        return cls(resource=resource, patch=True)
