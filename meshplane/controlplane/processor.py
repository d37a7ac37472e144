"""Manifest processing: parse, diff, apply and prune one component.

For each rendered object the processor:

1. stamps the owner reference (same-namespace objects only), the owner
   label and the generation annotation,
2. runs the preprocess hooks,
3. creates the object if it does not exist, or applies a three-way merge
   patch if it drifted from the desired state,
4. folds the outcome into that object's ResourceStatus.

Failures are per object: they are recorded on the resource status, collected
into an :class:`AggregateError`, and the remaining objects are still applied.

Once every rendered object is handled, resources tracked by the previous
status but not rendered this time are deleted in reverse of their previous
order.  A resource that is gone (deleted, 404 or 410) drops out of the new
status; a failed deletion keeps its entry so it is retried on the next pass.

Cross-namespace and cluster-scoped objects cannot carry an owner reference;
the generation annotation is what ties them to the control plane.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException
from structlog.typing import FilteringBoundLogger

from meshplane.controlplane.constants import GENERATION_ANNOTATION, OWNER_LABEL
from meshplane.controlplane.errors import AggregateError, DeleteError, ObjectError
from meshplane.controlplane.hooks import HookRegistry
from meshplane.controlplane.manifest import Manifest, flatten, parse_object, split_manifests
from meshplane.controlplane.patch import create_patch, set_last_applied
from meshplane.kube.client import PROPAGATION_FOREGROUND, ResourceClient, is_not_found
from meshplane.kube.unstructured import FieldTypeError, set_annotation, set_label
from meshplane.models.resources import ResourceKey
from meshplane.models.status import (
    ComponentStatus,
    ConditionStatus,
    ConditionType,
    ResourceStatus,
    update_delete_status,
    update_reconcile_status,
)
from meshplane.observability.logging import bind_resource
from meshplane.observability.metrics import resource_operations_total


class ManifestProcessor:
    """Applies component renderings for one reconciliation pass.

    One instance is created per pass; ``seen`` accumulates every resource
    key rendered during the pass, across components.
    """

    def __init__(
        self,
        client: ResourceClient,
        hooks: HookRegistry,
        namespace: str,
        owner_references: list[dict[str, Any]],
        generation: int,
    ) -> None:
        self._client = client
        self._hooks = hooks
        self._namespace = namespace
        self._owner_references = owner_references
        self._generation = str(generation)
        self.seen: set[ResourceKey] = set()

    async def process_manifests(
        self,
        name: str,
        manifests: Sequence[Manifest],
        old_status: ComponentStatus,
        log: FilteringBoundLogger,
    ) -> tuple[ComponentStatus, AggregateError | None]:
        """Reconcile *manifests* against the cluster and prune what disappeared.

        An empty *manifests* sequence tears the component down completely.
        Returns the new component status and the aggregate of every
        per-object error (None when everything succeeded).
        """
        errors: list[Exception] = []
        processed: set[ResourceKey] = set()
        new_status = ComponentStatus(
            resource=name,
            observed_generation=old_status.observed_generation,
            conditions=[c.model_copy() for c in old_status.conditions],
        )

        for manifest in manifests:
            manifest_log = log.bind(manifest=manifest.name)
            if not manifest.is_yaml:
                manifest_log.debug("skipping_manifest")
                continue
            manifest_log.debug("processing_manifest")
            for raw in split_manifests(manifest.content):
                try:
                    obj = parse_object(raw)
                except ObjectError as exc:
                    manifest_log.error("object_decode_failed", error=str(exc))
                    errors.append(exc)
                    continue
                if obj is None:
                    continue
                for item in flatten(obj):
                    try:
                        await self._process_object(item, processed, old_status, new_status, manifest_log)
                    except ObjectError as exc:
                        errors.append(exc)

        errors.extend(await self._prune(processed, old_status, new_status, log))

        aggregate = AggregateError.from_errors(errors)
        if manifests:
            update_reconcile_status(new_status, aggregate)
        else:
            update_delete_status(new_status, aggregate)
        return new_status, aggregate

    # ------------------------------------------------------------------
    # Per-object reconciliation
    # ------------------------------------------------------------------

    async def _process_object(
        self,
        obj: dict[str, Any],
        processed: set[ResourceKey],
        old_status: ComponentStatus,
        new_status: ComponentStatus,
        log: FilteringBoundLogger,
    ) -> None:
        try:
            key = ResourceKey.from_object(obj)
        except ValueError as exc:
            log.error("object_identity_invalid", error=str(exc))
            raise ObjectError(str(exc)) from exc
        log = bind_resource(log, key)

        try:
            self._stamp(obj, key)
        except FieldTypeError as exc:
            log.error("object_metadata_invalid", error=str(exc))
            raise ObjectError(str(exc), key) from exc

        log.debug("reconciling_resource")
        processed.add(key)
        self.seen.add(key)
        previous = old_status.find_resource_by_key(key)
        status = previous.model_copy(deep=True) if previous is not None else ResourceStatus(resource=str(key))
        new_status.add_resource(status)

        try:
            await self._hooks.preprocess(obj, log)
        except Exception as exc:
            log.error("preprocess_failed", error=str(exc))
            preprocess_error = ObjectError(f"error preprocessing object: {exc}", key)
            update_reconcile_status(status, preprocess_error)
            raise preprocess_error from exc

        set_last_applied(obj)

        error: ObjectError | None = None
        try:
            live = await self._client.get(key)
        except ApiException as exc:
            if is_not_found(exc):
                error = await self._create(obj, key, status, log)
            else:
                log.error("resource_lookup_failed", error=str(exc))
                error = ObjectError(f"error retrieving resource: {exc}", key)
        else:
            patch = create_patch(live, obj)
            if patch is None:
                log.debug("resource_unchanged")
                if status.is_condition_true(ConditionType.RECONCILED):
                    return
            else:
                error = await self._patch(key, patch, status, log)

        update_reconcile_status(status, error)
        if error is not None:
            raise error
        log.debug("resource_reconciled")

    def _stamp(self, obj: dict[str, Any], key: ResourceKey) -> None:
        if key.namespace == self._namespace:
            obj.setdefault("metadata", {})["ownerReferences"] = copy.deepcopy(self._owner_references)
        set_label(obj, OWNER_LABEL, self._namespace)
        set_annotation(obj, GENERATION_ANNOTATION, self._generation)

    async def _create(
        self,
        obj: dict[str, Any],
        key: ResourceKey,
        status: ResourceStatus,
        log: FilteringBoundLogger,
    ) -> ObjectError | None:
        log.info("creating_resource")
        try:
            await self._client.create(obj)
        except ApiException as exc:
            resource_operations_total.labels(operation="create", result="error").inc()
            log.error("resource_create_failed", error=str(exc))
            return ObjectError(f"error creating resource: {exc}", key)
        resource_operations_total.labels(operation="create", result="success").inc()
        status.observed_generation = 1
        try:
            await self._hooks.on_created(obj, log)
        except Exception as exc:
            log.error("created_hook_failed", error=str(exc))
        return None

    async def _patch(
        self,
        key: ResourceKey,
        patch: dict[str, Any],
        status: ResourceStatus,
        log: FilteringBoundLogger,
    ) -> ObjectError | None:
        log.info("updating_resource")
        status.remove_condition(ConditionType.RECONCILED)
        try:
            await self._client.patch(key, patch)
        except ApiException as exc:
            resource_operations_total.labels(operation="patch", result="error").inc()
            log.error("resource_patch_failed", error=str(exc))
            return ObjectError(f"error patching resource: {exc}", key)
        resource_operations_total.labels(operation="patch", result="success").inc()
        return None

    # ------------------------------------------------------------------
    # Prune
    # ------------------------------------------------------------------

    async def _prune(
        self,
        processed: set[ResourceKey],
        old_status: ComponentStatus,
        new_status: ComponentStatus,
        log: FilteringBoundLogger,
    ) -> list[Exception]:
        # TODO: delete in reverse dependency order once component graphs declare dependencies
        errors: list[Exception] = []
        for previous in reversed(old_status.resources):
            key = previous.key
            if key in processed:
                continue
            if previous.get_condition(ConditionType.INSTALLED).status == ConditionStatus.FALSE:
                continue
            resource_log = bind_resource(log, key)
            status = previous.model_copy(deep=True)
            error = await self._delete(key, resource_log)
            update_delete_status(status, error)
            if error is not None:
                new_status.add_resource(status)
                errors.append(error)
        return errors

    async def _delete(self, key: ResourceKey, log: FilteringBoundLogger) -> DeleteError | None:
        log.info("deleting_resource")
        try:
            await self._client.delete(key, PROPAGATION_FOREGROUND)
        except ApiException as exc:
            if not is_not_found(exc):
                resource_operations_total.labels(operation="delete", result="error").inc()
                log.error("resource_delete_failed", error=str(exc))
                return DeleteError(key, exc)
            log.debug("resource_already_deleted")
        resource_operations_total.labels(operation="delete", result="success").inc()
        try:
            await self._hooks.on_deleted(key.to_stub(), log)
        except Exception as exc:
            log.error("deleted_hook_failed", error=str(exc))
        return None
