"""
Resource Model - Identity and value types shared by the operator.

Every object the operator touches, primary or secondary, is a Resource
addressed by (kind, namespace, name). Server-generated fields (uid,
resource_version) are owned by the resource store.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ResourceID:
    """(name, namespace) pair identifying a resource instance of some kind."""

    name: str
    namespace: Optional[str] = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def from_resource(cls, resource: "Resource") -> "ResourceID":
        return cls(name=resource.name, namespace=resource.namespace)


@dataclass
class OwnerReference:
    """Back-reference from a secondary resource to the primary that created it."""

    kind: str
    name: str
    uid: Optional[str] = None
    controller: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            kind=data["kind"],
            name=data["name"],
            uid=data.get("uid"),
            controller=data.get("controller", True),
        )


@dataclass
class Resource:
    """
    A declarative resource.

    ``spec`` holds user intent, ``data`` holds configuration payloads
    (ConfigMap-style kinds) and ``status`` is derived state written by
    the operator.
    """

    kind: str
    name: str
    namespace: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)
    spec: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)
    uid: Optional[str] = None
    resource_version: Optional[int] = None

    @property
    def resource_id(self) -> ResourceID:
        return ResourceID(name=self.name, namespace=self.namespace)

    def copy(self) -> "Resource":
        """Return a deep copy, so callers never share mutable state with a store."""
        return copy.deepcopy(self)

    def is_owned_by(self, kind: str, name: str) -> bool:
        return any(
            ref.kind == kind and ref.name == name for ref in self.owner_references
        )

    def add_owner_reference(self, owner: "Resource") -> None:
        """Record ``owner`` as the controlling owner of this resource."""
        if self.is_owned_by(owner.kind, owner.name):
            return
        self.owner_references.append(
            OwnerReference(kind=owner.kind, name=owner.name, uid=owner.uid)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "owner_references": [ref.to_dict() for ref in self.owner_references],
            "spec": copy.deepcopy(self.spec),
            "data": copy.deepcopy(self.data),
            "status": copy.deepcopy(self.status),
            "uid": self.uid,
            "resource_version": self.resource_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        return cls(
            kind=data["kind"],
            name=data["name"],
            namespace=data.get("namespace"),
            labels=dict(data.get("labels") or {}),
            owner_references=[
                OwnerReference.from_dict(ref)
                for ref in data.get("owner_references") or []
            ],
            spec=copy.deepcopy(data.get("spec") or {}),
            data=copy.deepcopy(data.get("data") or {}),
            status=copy.deepcopy(data.get("status") or {}),
            uid=data.get("uid"),
            resource_version=data.get("resource_version"),
        )
