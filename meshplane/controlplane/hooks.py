"""Pluggable per-object and per-component hooks.

Hooks are looked up by kind (object hooks) or component name (component
hooks) so new components plug in by registration instead of by editing the
processor:

- preprocess(obj, log): may mutate the desired object before it is applied.
  Raising aborts that object only.
- on_created(obj, log) / on_deleted(obj, log): run after a successful create
  or delete.  Failures are logged by the caller and never fatal.
- ComponentHook.post_install(name, status, log): runs once per component
  after its manifests applied cleanly.  May raise
  :class:`~meshplane.controlplane.errors.ComponentNotReadyError`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from structlog.typing import FilteringBoundLogger

from meshplane.models.status import ComponentStatus

if TYPE_CHECKING:
    from meshplane.kube.client import ResourceClient

ObjectHook = Callable[[dict[str, Any], FilteringBoundLogger], Awaitable[None]]


class ComponentHook(ABC):
    """Post-install check for one component."""

    @abstractmethod
    async def post_install(self, name: str, status: ComponentStatus, log: FilteringBoundLogger) -> None:
        """Raise if the component is not usable yet."""


class HookRegistry:
    """Dispatch table for object and component hooks."""

    def __init__(self, default_component_hook: ComponentHook | None = None) -> None:
        self._default_component_hook = default_component_hook
        self._component_hooks: dict[str, ComponentHook] = {}
        # kind -> [(name filter, hook)]
        self._preprocessors: dict[str, list[tuple[str | None, ObjectHook]]] = defaultdict(list)
        self._created_hooks: dict[str, list[ObjectHook]] = defaultdict(list)
        self._deleted_hooks: dict[str, list[ObjectHook]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_component_hook(self, component: str, hook: ComponentHook) -> None:
        self._component_hooks[component] = hook

    def register_preprocessor(self, kind: str, hook: ObjectHook, name: str | None = None) -> None:
        """Run *hook* on objects of *kind* (optionally only the one called *name*)."""
        self._preprocessors[kind].append((name, hook))

    def register_created_hook(self, kind: str, hook: ObjectHook) -> None:
        self._created_hooks[kind].append(hook)

    def register_deleted_hook(self, kind: str, hook: ObjectHook) -> None:
        self._deleted_hooks[kind].append(hook)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def component_hook(self, component: str) -> ComponentHook | None:
        return self._component_hooks.get(component, self._default_component_hook)

    async def post_install(self, component: str, status: ComponentStatus, log: FilteringBoundLogger) -> None:
        hook = self.component_hook(component)
        if hook is not None:
            await hook.post_install(component, status, log)

    async def preprocess(self, obj: dict[str, Any], log: FilteringBoundLogger) -> None:
        name = (obj.get("metadata") or {}).get("name")
        for wanted, hook in self._preprocessors.get(str(obj.get("kind")), []):
            if wanted is None or wanted == name:
                await hook(obj, log)

    async def on_created(self, obj: dict[str, Any], log: FilteringBoundLogger) -> None:
        for hook in self._created_hooks.get(str(obj.get("kind")), []):
            await hook(obj, log)

    async def on_deleted(self, obj: dict[str, Any], log: FilteringBoundLogger) -> None:
        for hook in self._deleted_hooks.get(str(obj.get("kind")), []):
            await hook(obj, log)


def default_hooks(client: ResourceClient) -> HookRegistry:
    """Registry with the standard readiness checks and object patchers."""
    from meshplane.controlplane.constants import GALLEY_COMPONENT, SIDECAR_INJECTOR_COMPONENT
    from meshplane.controlplane.kiali import KialiConfigPatcher
    from meshplane.controlplane.readiness import DeploymentReadiness, WebhookReadiness

    registry = HookRegistry(default_component_hook=DeploymentReadiness(client))
    registry.register_component_hook(
        GALLEY_COMPONENT,
        WebhookReadiness(client, webhook_kind="ValidatingWebhookConfiguration"),
    )
    registry.register_component_hook(
        SIDECAR_INJECTOR_COMPONENT,
        WebhookReadiness(client, webhook_kind="MutatingWebhookConfiguration"),
    )
    registry.register_preprocessor("Kiali", KialiConfigPatcher(client))
    return registry
