"""Component orchestrator: one reconciliation pass for a control plane.

Pass outline::

    clear Reconciled -> render all charts -> label namespace
      -> ordered components -> remaining rendered components
      -> components only known from the previous status
      -> trailing add-on -> generation sweep -> persist status

Processing is strictly sequential and fail-fast at the component level:
the first component that fails stops the pass.  Status is always written
back before returning or raising.  A ComponentNotReadyError is not a
failure; the pass ends early and asks to be re-run after a short delay.

The reconciler holds no global state.  Passes for *different* control
planes may run concurrently; the caller must serialize passes for the same
control plane.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from kubernetes_asyncio.client.exceptions import ApiException
from structlog.typing import FilteringBoundLogger

from meshplane.controlplane.constants import (
    COMPONENT_PREFIX,
    IGNORE_NAMESPACE_LABEL,
    IGNORE_NAMESPACE_VALUE,
    MEMBER_OF_LABEL,
    NOT_READY_REQUEUE_SECONDS,
    ORDERED_COMPONENTS,
    PRUNABLE_KINDS,
    TRAILING_COMPONENTS,
)
from meshplane.controlplane.errors import (
    ComponentNotReadyError,
    NamespaceLabelError,
    ReconcileError,
    RenderError,
    StatusPersistError,
)
from meshplane.controlplane.hooks import HookRegistry, default_hooks
from meshplane.controlplane.processor import ManifestProcessor
from meshplane.controlplane.pruner import GenerationPruner
from meshplane.controlplane.renderer import Renderer, Renderings
from meshplane.kube.client import ResourceClient
from meshplane.models.controlplane import ControlPlane
from meshplane.models.resources import ResourceKey
from meshplane.models.status import (
    ComponentStatus,
    Condition,
    ConditionReason,
    ConditionStatus,
    ConditionType,
    ControlPlaneStatus,
    update_reconcile_status,
)
from meshplane.observability.logging import get_logger
from meshplane.observability.metrics import (
    component_not_ready_total,
    reconcile_duration_seconds,
    reconcile_total,
)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome handed back to the caller driving the reconcile loop."""

    requeue: bool = False
    requeue_after: float | None = None


class ControlPlaneReconciler:
    """Drives one reconciliation pass for a single control plane instance.

    Args:
        client: Orchestration API client.
        instance: The desired state; its ``status`` is replaced in place.
        renderer: Produces component renderings from the desired state.
        hooks: Object and component hooks; defaults to :func:`default_hooks`.
        ordered_components: Installed first, in this order.
        component_prefix: Rendered components outside this prefix are only
            processed when named explicitly.
        trailing_components: Processed last, rendered or not.
        prunable_kinds: Kinds swept by generation after a successful pass;
            empty disables the sweep.
        not_ready_requeue_seconds: Delay requested when a component is not ready.
    """

    def __init__(
        self,
        client: ResourceClient,
        instance: ControlPlane,
        renderer: Renderer,
        hooks: HookRegistry | None = None,
        *,
        ordered_components: Sequence[str] = ORDERED_COMPONENTS,
        component_prefix: str = COMPONENT_PREFIX,
        trailing_components: Sequence[str] = TRAILING_COMPONENTS,
        prunable_kinds: Sequence[tuple[str, str]] = PRUNABLE_KINDS,
        not_ready_requeue_seconds: float = NOT_READY_REQUEUE_SECONDS,
    ) -> None:
        self._client = client
        self._instance = instance
        self._renderer = renderer
        self._hooks = hooks if hooks is not None else default_hooks(client)
        self._ordered_components = tuple(ordered_components)
        self._component_prefix = component_prefix
        self._trailing_components = tuple(trailing_components)
        self._prunable_kinds = tuple(prunable_kinds)
        self._not_ready_requeue_seconds = not_ready_requeue_seconds
        self._log = get_logger("reconciler").bind(
            control_plane=instance.name,
            namespace=instance.namespace,
            generation=instance.generation,
        )

        # Per-pass state, reset by reconcile()
        self._prior = ControlPlaneStatus()
        self._status = ControlPlaneStatus()
        self._renderings: Renderings = {}
        self._processed: set[str] = set()

    @property
    def status(self) -> ControlPlaneStatus:
        return self._status

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def reconcile(self) -> ReconcileResult:
        """Run one pass.

        Returns a ReconcileResult on success and when a component is not
        ready yet (``requeue=True``).  Any other failure is raised after the
        status has been persisted.
        """
        started = time.monotonic()
        try:
            result = await self._reconcile()
        except (ReconcileError, ApiException):
            reconcile_total.labels(outcome="error").inc()
            raise
        finally:
            reconcile_duration_seconds.observe(time.monotonic() - started)
        reconcile_total.labels(outcome="requeue" if result.requeue else "success").inc()
        return result

    async def _reconcile(self) -> ReconcileResult:
        instance = self._instance
        log = self._log
        log.info("reconciliation_started")

        # prepare to write a new reconciliation status
        instance.status.remove_condition(ConditionType.RECONCILED)
        self._prior = instance.status.model_copy(deep=True)
        self._status = ControlPlaneStatus(
            observed_generation=self._prior.observed_generation,
            conditions=[c.model_copy() for c in self._prior.conditions],
        )
        self._processed = set()

        try:
            # chart reads touch the filesystem; keep them off the event loop
            self._renderings = await asyncio.to_thread(self._renderer.render, instance)
        except RenderError as exc:
            # nothing was rendered, so nothing else is safe to touch
            log.error("render_failed", error=str(exc))
            update_reconcile_status(instance.status, exc)
            await self._persist(instance.status, log)
            raise

        try:
            await self._ensure_namespace_labels(log)
        except NamespaceLabelError as exc:
            return await self._handle_error(exc)

        processor = ManifestProcessor(
            self._client,
            self._hooks,
            namespace=instance.namespace,
            owner_references=[instance.owner_reference()],
            generation=instance.generation,
        )

        try:
            for name in self._walk_order():
                await self._process_component(processor, name)
            if self._prunable_kinds:
                pruner = GenerationPruner(self._client, instance.namespace, instance.generation, self._prunable_kinds)
                await pruner.prune(processor.seen, log)
        except (ReconcileError, ApiException) as exc:
            return await self._handle_error(exc)

        self._status.observed_generation = instance.generation
        update_reconcile_status(self._status, None)
        self._set_ready(ConditionStatus.TRUE, ConditionReason.COMPONENTS_READY, "")
        persisted = await self._persist(self._status, log)
        log.info("reconciliation_complete")
        if not persisted:
            return ReconcileResult(requeue=True)
        return ReconcileResult()

    def _walk_order(self) -> Iterator[str]:
        """Yield component names in processing order.

        Evaluated lazily so that the set of processed names is current when
        the later groups are computed.
        """
        for name in self._ordered_components:
            if name not in self._processed:
                yield name

        for name in sorted(self._renderings):
            if name.startswith(self._component_prefix) and name not in self._processed:
                yield name

        trailing = set(self._trailing_components)
        for component in self._prior.components:
            name = component.resource
            if name not in self._processed and name not in trailing:
                yield name

        for name in self._trailing_components:
            if name not in self._processed:
                yield name

    async def _process_component(self, processor: ManifestProcessor, name: str) -> None:
        self._processed.add(name)
        log = self._log.bind(component=name)
        renderings = self._renderings.get(name, [])

        previous = self._prior.find_component_by_name(name)
        if previous is None:
            if not renderings:
                log.debug("no_renderings_for_component")
                return
            previous = ComponentStatus(resource=name)

        log.info("reconciling_component", manifests=len(renderings))
        status, error = await processor.process_manifests(name, renderings, previous, log)
        status.observed_generation = self._instance.generation

        # a torn-down component drops out of status once nothing is left to retry
        if renderings or status.resources:
            self._status.components.append(status)

        if error is not None:
            log.error("component_reconcile_failed", error=str(error), failures=len(error.errors))
            raise error

        if renderings:
            try:
                await self._hooks.post_install(name, status, log)
            except ComponentNotReadyError as exc:
                exc.component = exc.component or name
                raise
            except (ReconcileError, ApiException) as exc:
                log.error("component_postprocess_failed", error=str(exc))
                raise
        log.info("component_reconciled")

    # ------------------------------------------------------------------
    # Namespace
    # ------------------------------------------------------------------

    async def _ensure_namespace_labels(self, log: FilteringBoundLogger) -> None:
        """Keep sidecar injection off and membership on for the control plane namespace."""
        name = self._instance.namespace
        key = ResourceKey("v1", "Namespace", "", name)
        try:
            namespace = await self._client.get(key)
        except ApiException as exc:
            log.error("namespace_get_failed", error=str(exc))
            raise NamespaceLabelError(f"error retrieving namespace {name}: {exc}") from exc

        metadata = namespace.setdefault("metadata", {})
        labels = metadata.get("labels")
        if labels is None:
            labels = {}
            metadata["labels"] = labels

        wanted = {IGNORE_NAMESPACE_LABEL: IGNORE_NAMESPACE_VALUE, MEMBER_OF_LABEL: name}
        changed = False
        for label, value in wanted.items():
            if labels.get(label) != value:
                log.info("adding_namespace_label", label=label, value=value)
                labels[label] = value
                changed = True
        if not changed:
            return
        try:
            await self._client.update(namespace)
        except ApiException as exc:
            log.error("namespace_update_failed", error=str(exc))
            raise NamespaceLabelError(f"error labelling namespace {name}: {exc}") from exc

    # ------------------------------------------------------------------
    # Error handling and status
    # ------------------------------------------------------------------

    async def _handle_error(self, error: Exception) -> ReconcileResult:
        """Persist status for an aborted pass, then requeue or re-raise."""
        # components the pass never reached keep their previous status
        for component in self._prior.components:
            if component.resource not in self._processed:
                self._status.components.append(component.model_copy(deep=True))
        self._status.observed_generation = self._instance.generation

        if isinstance(error, ComponentNotReadyError):
            component = error.component or "unknown"
            self._log.info("component_not_ready", component=component, reason=str(error))
            component_not_ready_total.labels(component=component).inc()
            self._set_ready(ConditionStatus.FALSE, ConditionReason.COMPONENT_NOT_READY, str(error))
            await self._persist(self._status, self._log)
            return ReconcileResult(requeue=True, requeue_after=self._not_ready_requeue_seconds)

        self._log.error("reconciliation_failed", error=str(error), error_type=type(error).__name__)
        update_reconcile_status(self._status, error)
        await self._persist(self._status, self._log)
        raise error

    def _set_ready(self, status: ConditionStatus, reason: ConditionReason, message: str) -> None:
        self._status.set_condition(
            Condition(type=ConditionType.READY, status=status, reason=reason, message=message)
        )

    async def _persist(self, status: ControlPlaneStatus, log: FilteringBoundLogger) -> bool:
        """Write *status* back to the control plane; log and swallow failures.

        Returns False when the write failed.
        """
        self._instance.status = status
        try:
            await self._client.patch_status(self._instance.key, status.to_object())
        except ApiException as exc:
            persist_error = StatusPersistError(f"error updating control plane status: {exc}")
            log.error("status_persist_failed", error=str(persist_error))
            return False
        return True
