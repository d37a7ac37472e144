"""Operator bootstrap: configuration, Kubernetes client and the reconcile loop.

Startup order: config -> logging -> metrics endpoint -> K8s client.
The loop re-runs a pass when asked to requeue, after the periodic interval
otherwise, and backs off exponentially (1 s - 60 s) after failed passes.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from kubernetes_asyncio.client.exceptions import ApiException
from pydantic import ValidationError

from meshplane.config import load_config
from meshplane.controlplane.errors import ReconcileError
from meshplane.controlplane.reconciler import ControlPlaneReconciler, ReconcileResult
from meshplane.controlplane.renderer import CompositeRenderer, DirectoryRenderer, Renderer
from meshplane.models.config import MeshPlaneConfig
from meshplane.models.controlplane import CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, ControlPlane
from meshplane.models.resources import ResourceKey
from meshplane.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from meshplane.kube.client import ResourceClient

_BACKOFF_MIN_S: float = 1.0
_BACKOFF_MAX_S: float = 60.0
_BACKOFF_MULTIPLIER: float = 2.0


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class MeshPlaneApp:
    """Owns the configuration, API client and reconcile loop for one control plane."""

    def __init__(self, config: MeshPlaneConfig | None = None, client: ResourceClient | None = None) -> None:
        self.config = config
        self._client = client
        self._api_client: Any = None
        self._log: FilteringBoundLogger = get_logger("app")
        self._backoff_s = _BACKOFF_MIN_S

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load config, configure logging and connect to the cluster.

        Raises _ComponentError if the Kubernetes client cannot be set up.
        """
        if self.config is None:
            self.config = load_config()
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._start_metrics()
        if self._client is None:
            await self._start_k8s_client()

    def _start_metrics(self) -> None:
        assert self.config is not None
        if not self.config.metrics.enabled:
            return
        from prometheus_client import start_http_server

        start_http_server(self.config.metrics.port)
        self._log.info("metrics endpoint started", port=self.config.metrics.port)

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        try:
            import kubernetes_asyncio.config as k8s_config
            from kubernetes_asyncio.client import ApiClient

            from meshplane.kube.client import KubernetesResourceClient

            try:
                k8s_config.load_incluster_config()  # type: ignore[no-untyped-call]
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = ApiClient()
            self._client = await KubernetesResourceClient.connect(self._api_client)
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def stop(self) -> None:
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None
        self._log.info("meshplane stopped")

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    @property
    def client(self) -> ResourceClient:
        if self._client is None:
            raise RuntimeError("MeshPlaneApp.start() has not been called")
        return self._client

    async def fetch_instance(self, name: str, namespace: str) -> ControlPlane:
        key = ResourceKey(CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, namespace, name)
        obj = await self.client.get(key)
        try:
            return ControlPlane.from_object(obj)
        except (ValidationError, ValueError) as exc:
            raise ReconcileError(f"malformed {key}: {exc}") from exc

    def build_renderer(self) -> Renderer:
        assert self.config is not None
        return CompositeRenderer(DirectoryRenderer(self.config.charts.path))

    async def reconcile_once(self, name: str, namespace: str) -> ReconcileResult:
        """Fetch the control plane and run a single pass against it."""
        assert self.config is not None
        instance = await self.fetch_instance(name, namespace)
        kwargs: dict[str, Any] = {
            "not_ready_requeue_seconds": float(self.config.reconcile.not_ready_requeue_seconds),
        }
        if not self.config.reconcile.prune_enabled:
            kwargs["prunable_kinds"] = ()
        reconciler = ControlPlaneReconciler(self.client, instance, self.build_renderer(), **kwargs)
        return await reconciler.reconcile()

    async def run(self, name: str, namespace: str) -> None:
        """Reconcile forever; cancel the task to stop."""
        assert self.config is not None
        while True:
            try:
                result = await self.reconcile_once(name, namespace)
            except (ReconcileError, ApiException, ValueError) as exc:
                # ValueError: a persisted status entry whose resource key does not parse
                await self._backoff(str(exc))
                continue
            self._backoff_s = _BACKOFF_MIN_S
            delay = float(self.config.reconcile.interval_seconds)
            if result.requeue:
                delay = result.requeue_after if result.requeue_after is not None else _BACKOFF_MIN_S
            self._log.debug("next_reconcile_scheduled", delay_s=delay, requeue=result.requeue)
            await asyncio.sleep(delay)

    async def _backoff(self, reason: str) -> None:
        """Sleep for the current back-off duration, then increase it."""
        delay = min(self._backoff_s, _BACKOFF_MAX_S)
        self._log.warning("reconcile_backoff", reason=reason, delay_s=delay)
        await asyncio.sleep(delay)
        self._backoff_s = min(self._backoff_s * _BACKOFF_MULTIPLIER, _BACKOFF_MAX_S)
