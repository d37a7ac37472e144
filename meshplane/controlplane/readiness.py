"""Post-install readiness checks.

A component counts as ready when every workload it installed reports at
least one ready replica, and (for the webhook components) every webhook
entry of its webhook configurations has a populated ``caBundle``.  Anything
short of that raises :class:`ComponentNotReadyError`, which the reconciler
turns into a short requeue rather than a failed pass.

Only resources whose Installed condition is True are checked.  A fetch
failure, including not-found, is a hard error: waiting on an object we never
installed is a bug, not a transient state.
"""

from __future__ import annotations

from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException
from structlog.typing import FilteringBoundLogger

from meshplane.controlplane.errors import ComponentNotReadyError, ReconcileError
from meshplane.controlplane.hooks import ComponentHook
from meshplane.kube.client import ResourceClient, is_not_found
from meshplane.kube.unstructured import FieldTypeError, nested_int, nested_slice, nested_string
from meshplane.models.resources import ResourceKey
from meshplane.models.status import ComponentStatus, ConditionType

WORKLOAD_KINDS: tuple[str, ...] = ("StatefulSet", "Deployment", "DeploymentConfig")


def _installed_keys(status: ComponentStatus, kind: str) -> list[ResourceKey]:
    return [
        resource.key
        for resource in status.find_resources_of_kind(kind)
        if resource.is_condition_true(ConditionType.INSTALLED)
    ]


async def _fetch(client: ResourceClient, key: ResourceKey, log: FilteringBoundLogger) -> dict[str, Any]:
    try:
        return await client.get(key)
    except ApiException as exc:
        if is_not_found(exc):
            log.error("waiting_on_unknown_resource", kind=key.kind, name=key.name, namespace=key.namespace)
            raise ReconcileError(f"{key.kind} {key.name} not found") from exc
        log.error(
            "readiness_fetch_failed",
            kind=key.kind,
            name=key.name,
            namespace=key.namespace,
            error=str(exc),
        )
        raise ReconcileError(f"error getting {key.kind} {key.name}: {exc}") from exc


async def wait_for_deployment(client: ResourceClient, key: ResourceKey, log: FilteringBoundLogger) -> None:
    """Raise ComponentNotReadyError unless *key* reports a ready replica."""
    log.info("checking_deployment_ready", kind=key.kind, name=key.name, namespace=key.namespace)
    obj = await _fetch(client, key, log)
    try:
        ready_replicas, _ = nested_int(obj, "status", "readyReplicas")
    except FieldTypeError:
        ready_replicas = 0
    if ready_replicas <= 0:
        raise ComponentNotReadyError(f"no replica is ready for {key.kind} {key.name}")


async def wait_for_deployments(client: ResourceClient, status: ComponentStatus, log: FilteringBoundLogger) -> None:
    for kind in WORKLOAD_KINDS:
        for key in _installed_keys(status, kind):
            await wait_for_deployment(client, key, log)


async def wait_for_webhook_ca_bundle(client: ResourceClient, key: ResourceKey, log: FilteringBoundLogger) -> None:
    """Raise ComponentNotReadyError until every webhook entry has a caBundle.

    Webhook configurations are cluster-scoped, so the lookup is by name only.
    A configuration without webhook entries is trivially ready.
    """
    key = ResourceKey(key.api_version, key.kind, "", key.name)
    log.info("waiting_for_webhook_ca_bundle", kind=key.kind, name=key.name)
    obj = await _fetch(client, key, log)
    try:
        webhooks, found = nested_slice(obj, "webhooks")
    except FieldTypeError as exc:
        raise ReconcileError(f"malformed webhooks in {key.kind} {key.name}: {exc}") from exc
    if not found or not webhooks:
        return
    for webhook in webhooks:
        ca_bundle = ""
        if isinstance(webhook, dict):
            try:
                ca_bundle, _ = nested_string(webhook, "clientConfig", "caBundle")
            except FieldTypeError:
                ca_bundle = ""
        if not ca_bundle:
            raise ComponentNotReadyError(f"caBundle in {key.kind} {key.name} not set")


class DeploymentReadiness(ComponentHook):
    """Default hook: wait for every installed workload to have a ready replica."""

    def __init__(self, client: ResourceClient) -> None:
        self._client = client

    async def post_install(self, name: str, status: ComponentStatus, log: FilteringBoundLogger) -> None:
        try:
            await wait_for_deployments(self._client, status, log)
        except ComponentNotReadyError as exc:
            exc.component = name
            raise


class WebhookReadiness(DeploymentReadiness):
    """Wait for webhook CA bundle injection, then for the workloads."""

    def __init__(self, client: ResourceClient, webhook_kind: str) -> None:
        super().__init__(client)
        self._webhook_kind = webhook_kind

    async def post_install(self, name: str, status: ComponentStatus, log: FilteringBoundLogger) -> None:
        for key in _installed_keys(status, self._webhook_kind):
            try:
                await wait_for_webhook_ca_bundle(self._client, key, log)
            except ComponentNotReadyError as exc:
                exc.component = name
                raise
        await super().post_install(name, status, log)
