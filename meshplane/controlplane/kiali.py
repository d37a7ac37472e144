"""Kiali custom resource patcher.

Kiali needs the external URLs of the tracing (Jaeger) and Grafana consoles.
When the rendered Kiali resource leaves a URL empty and the integration is
not switched off, the URL is discovered from the Route of the same name in
the Kiali namespace.  A missing Route, or one without a host, disables the
integration instead of failing the object: both consoles are optional.
"""

from __future__ import annotations

from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException
from structlog.typing import FilteringBoundLogger

from meshplane.kube.client import ResourceClient, is_not_found
from meshplane.kube.unstructured import FieldTypeError, nested_bool, nested_string, set_nested_field
from meshplane.models.resources import ResourceKey

ROUTE_API_VERSION = "route.openshift.io/v1"
ROUTE_KIND = "Route"

# external_services section -> name of the Route that exposes it
_SERVICES: tuple[tuple[str, str], ...] = (
    ("tracing", "jaeger"),
    ("grafana", "grafana"),
)


class KialiConfigPatcher:
    """Preprocess hook filling in Kiali's tracing and grafana URLs."""

    def __init__(self, client: ResourceClient) -> None:
        self._client = client

    async def __call__(self, obj: dict[str, Any], log: FilteringBoundLogger) -> None:
        log.info("patching_kiali_config")
        namespace = str((obj.get("metadata") or {}).get("namespace") or "")
        for section, route_name in _SERVICES:
            url, enabled = await self._resolve(obj, namespace, section, route_name, log)
            log.info("kiali_service_settings", service=section, url=url, enabled=enabled)
            try:
                set_nested_field(obj, url, "spec", "external_services", section, "url")
                set_nested_field(obj, enabled, "spec", "external_services", section, "enabled")
            except FieldTypeError as exc:
                raise ValueError(f"could not set {section} settings in kiali CR: {exc}") from exc

    async def _resolve(
        self,
        obj: dict[str, Any],
        namespace: str,
        section: str,
        route_name: str,
        log: FilteringBoundLogger,
    ) -> tuple[str, bool]:
        try:
            url, _ = nested_string(obj, "spec", "external_services", section, "url")
        except FieldTypeError:
            url = ""
        try:
            enabled, found = nested_bool(obj, "spec", "external_services", section, "enabled")
        except FieldTypeError:
            enabled, found = True, False
        if not found:
            # unset means wanted; switched off below if discovery fails
            enabled = True

        if url or not enabled:
            return url, enabled

        log.info("auto_detecting_kiali_service", service=section, route=route_name)
        key = ResourceKey(ROUTE_API_VERSION, ROUTE_KIND, namespace, route_name)
        try:
            route = await self._client.get(key)
        except ApiException as exc:
            if not is_not_found(exc):
                log.error("kiali_route_lookup_failed", service=section, route=route_name, error=str(exc))
            return "", False
        return route_url(route)


def route_url(route: dict[str, Any]) -> tuple[str, bool]:
    """Return ``(url, enabled)`` for a Route; ``("", False)`` when it has no host."""
    try:
        host, _ = nested_string(route, "spec", "host")
    except FieldTypeError:
        host = ""
    if not host:
        return "", False
    try:
        termination, _ = nested_string(route, "spec", "tls", "termination")
    except FieldTypeError:
        termination = ""
    scheme = "https" if termination else "http"
    return f"{scheme}://{host}", True
