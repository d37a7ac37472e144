"""Orchestration API client boundary.

The reconciler only talks to the cluster through :class:`ResourceClient`.
:class:`KubernetesResourceClient` implements it on top of the
kubernetes_asyncio dynamic client so arbitrary kinds (including custom
resources) can be handled as plain dicts.

Failures surface as :class:`kubernetes_asyncio.client.exceptions.ApiException`;
use :func:`is_not_found` to tell "gone" apart from real errors.
"""

from __future__ import annotations

import builtins
from typing import Any, Protocol, runtime_checkable

from kubernetes_asyncio.client.exceptions import ApiException

from meshplane.models.resources import ResourceKey
from meshplane.observability.logging import get_logger

MERGE_PATCH = "application/merge-patch+json"
PROPAGATION_FOREGROUND = "Foreground"

_NOT_FOUND_STATUSES: frozenset[int] = frozenset({404, 410})


def is_not_found(exc: BaseException) -> bool:
    """True for 404 Not Found and 410 Gone responses."""
    return isinstance(exc, ApiException) and exc.status in _NOT_FOUND_STATUSES


@runtime_checkable
class ResourceClient(Protocol):
    """Minimal interface the reconciler needs from the orchestration API."""

    async def get(self, key: ResourceKey) -> dict[str, Any]: ...

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def patch(self, key: ResourceKey, patch: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, key: ResourceKey, propagation_policy: str = PROPAGATION_FOREGROUND) -> None: ...

    async def list(self, api_version: str, kind: str, label_selector: str = "") -> builtins.list[dict[str, Any]]: ...

    async def patch_status(self, key: ResourceKey, status: dict[str, Any]) -> None: ...


class KubernetesResourceClient:
    """:class:`ResourceClient` backed by ``kubernetes_asyncio.dynamic.DynamicClient``.

    Example::

        async with ApiClient() as api:
            client = await KubernetesResourceClient.connect(api)
            live = await client.get(key)
    """

    def __init__(self, dynamic: Any) -> None:
        self._dynamic = dynamic
        self._log = get_logger("kube.client")

    @classmethod
    async def connect(cls, api_client: Any) -> KubernetesResourceClient:
        """Run API discovery and wrap the resulting dynamic client."""
        from kubernetes_asyncio.dynamic import DynamicClient

        dynamic = await DynamicClient(api_client)
        return cls(dynamic)

    async def _resource(self, api_version: str, kind: str) -> Any:
        from kubernetes_asyncio.dynamic.exceptions import ResourceNotFoundError

        try:
            return await self._dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as exc:
            # kind not served by the cluster: no such objects can exist
            raise ApiException(status=404, reason=f"{api_version} {kind} not served: {exc}") from exc

    @staticmethod
    def _namespace(resource: Any, namespace: str) -> str | None:
        return namespace if getattr(resource, "namespaced", False) and namespace else None

    async def get(self, key: ResourceKey) -> dict[str, Any]:
        resource = await self._resource(key.api_version, key.kind)
        result = await self._dynamic.get(resource, name=key.name, namespace=self._namespace(resource, key.namespace))
        return _to_dict(result)

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = ResourceKey.from_object(obj)
        resource = await self._resource(key.api_version, key.kind)
        result = await self._dynamic.create(resource, body=obj, namespace=self._namespace(resource, key.namespace))
        return _to_dict(result)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = ResourceKey.from_object(obj)
        resource = await self._resource(key.api_version, key.kind)
        result = await self._dynamic.replace(
            resource,
            body=obj,
            name=key.name,
            namespace=self._namespace(resource, key.namespace),
        )
        return _to_dict(result)

    async def patch(self, key: ResourceKey, patch: dict[str, Any]) -> dict[str, Any]:
        resource = await self._resource(key.api_version, key.kind)
        result = await self._dynamic.patch(
            resource,
            body=patch,
            name=key.name,
            namespace=self._namespace(resource, key.namespace),
            content_type=MERGE_PATCH,
        )
        return _to_dict(result)

    async def delete(self, key: ResourceKey, propagation_policy: str = PROPAGATION_FOREGROUND) -> None:
        resource = await self._resource(key.api_version, key.kind)
        await self._dynamic.delete(
            resource,
            name=key.name,
            namespace=self._namespace(resource, key.namespace),
            body={"apiVersion": "v1", "kind": "DeleteOptions", "propagationPolicy": propagation_policy},
        )

    async def list(self, api_version: str, kind: str, label_selector: str = "") -> builtins.list[dict[str, Any]]:
        resource = await self._resource(api_version, kind)
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = _to_dict(await self._dynamic.get(resource, **kwargs))
        items = result.get("items") or []
        # list responses omit apiVersion/kind on their items
        for item in items:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return list(items)

    async def patch_status(self, key: ResourceKey, status: dict[str, Any]) -> None:
        resource = await self._resource(key.api_version, key.kind)
        subresources = getattr(resource, "subresources", None) or {}
        target = subresources.get("status", resource)
        await self._dynamic.patch(
            target,
            body={"status": status},
            name=key.name,
            namespace=self._namespace(resource, key.namespace),
            content_type=MERGE_PATCH,
        )
        self._log.debug("status_patched", resource=str(key))


def _to_dict(result: Any) -> dict[str, Any]:
    if isinstance(result, dict):
        return result
    to_dict = getattr(result, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    raise TypeError(f"unexpected API response type: {type(result).__name__}")
