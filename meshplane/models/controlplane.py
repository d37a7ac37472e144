"""The desired-state document: a ServiceMeshControlPlane resource."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from meshplane.models.resources import ResourceKey
from meshplane.models.status import ControlPlaneStatus

CONTROL_PLANE_API_VERSION = "maistra.io/v1"
CONTROL_PLANE_KIND = "ServiceMeshControlPlane"


@dataclass
class ControlPlane:
    """Typed view of the control plane custom resource.

    ``spec`` stays an untyped values document; its layout belongs to the
    charts that render it.
    """

    name: str
    namespace: str
    generation: int = 1
    uid: str = ""
    api_version: str = CONTROL_PLANE_API_VERSION
    kind: str = CONTROL_PLANE_KIND
    spec: dict[str, Any] = field(default_factory=dict)
    status: ControlPlaneStatus = field(default_factory=ControlPlaneStatus)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ControlPlane:
        metadata = obj.get("metadata") or {}
        return cls(
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "")),
            generation=int(metadata.get("generation") or 1),
            uid=str(metadata.get("uid", "")),
            api_version=str(obj.get("apiVersion") or CONTROL_PLANE_API_VERSION),
            kind=str(obj.get("kind") or CONTROL_PLANE_KIND),
            spec=dict(obj.get("spec") or {}),
            status=ControlPlaneStatus.from_object(obj.get("status")),
        )

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.api_version, self.kind, self.namespace, self.name)

    def owner_reference(self) -> dict[str, Any]:
        """Controller owner reference stamped on same-namespace objects."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def values(self, section: str) -> dict[str, Any]:
        """Return one values subtree of the spec (e.g. ``istio``), or ``{}``."""
        value = self.spec.get(section)
        return value if isinstance(value, dict) else {}
