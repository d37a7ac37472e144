"""Resource identity for orchestration API objects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

_KIND_SEPARATOR = ", Kind="


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Canonical identity of an API object: (apiVersion, kind, namespace, name).

    The string form is what status records persist, e.g.
    ``istio-system/apps/v1, Kind=Deployment/istio-pilot``.  Cluster-scoped
    objects have an empty namespace: ``/admissionregistration.k8s.io/v1beta1,
    Kind=MutatingWebhookConfiguration/istio-sidecar-injector``.
    """

    api_version: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ResourceKey:
        """Build a key from an untyped object.

        Raises ValueError when apiVersion, kind or metadata.name is missing.
        """
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("object metadata is not a mapping")
        api_version = obj.get("apiVersion") or ""
        kind = obj.get("kind") or ""
        name = metadata.get("name") or ""
        if not api_version or not kind or not name:
            raise ValueError(
                f"object is missing identity fields (apiVersion={api_version!r}, kind={kind!r}, name={name!r})"
            )
        return cls(
            api_version=str(api_version),
            kind=str(kind),
            namespace=str(metadata.get("namespace") or ""),
            name=str(name),
        )

    @classmethod
    def parse(cls, text: str) -> ResourceKey:
        """Inverse of ``str(key)``."""
        namespace, sep, rest = text.partition("/")
        if not sep:
            raise ValueError(f"malformed resource key: {text!r}")
        gvk, sep, name = rest.rpartition("/")
        if not sep or _KIND_SEPARATOR not in gvk or not name:
            raise ValueError(f"malformed resource key: {text!r}")
        api_version, _, kind = gvk.partition(_KIND_SEPARATOR)
        return cls(api_version=api_version, kind=kind, namespace=namespace, name=name)

    @property
    def group(self) -> str:
        group, sep, _ = self.api_version.rpartition("/")
        return group if sep else ""

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def cluster_scoped(self) -> bool:
        return self.namespace == ""

    def to_stub(self) -> dict[str, Any]:
        """Minimal untyped reference suitable for lookups and deletes."""
        metadata: dict[str, Any] = {"name": self.name}
        if self.namespace:
            metadata["namespace"] = self.namespace
        return {"apiVersion": self.api_version, "kind": self.kind, "metadata": metadata}

    def __str__(self) -> str:
        return f"{self.namespace}/{self.api_version}{_KIND_SEPARATOR}{self.kind}/{self.name}"
