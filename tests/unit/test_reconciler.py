"""End-to-end tests for ControlPlaneReconciler against the in-memory client.

Covers:
  - Fresh install ordering (fixed order, remaining components, trailing add-on)
  - Idempotence of repeated passes
  - Convergence when components or resources disappear
  - Fail-fast ordering and status preservation on abort
  - Readiness gating and the short requeue
  - Render, namespace and status-persist failures
  - Generation sweep of untracked objects
"""

from __future__ import annotations

import threading
from typing import Any

import pytest

from meshplane.controlplane.constants import GENERATION_ANNOTATION, IGNORE_NAMESPACE_LABEL, MEMBER_OF_LABEL, OWNER_LABEL
from meshplane.controlplane.errors import AggregateError, NamespaceLabelError, RenderError
from meshplane.controlplane.hooks import HookRegistry
from meshplane.controlplane.manifest import Manifest
from meshplane.controlplane.reconciler import ControlPlaneReconciler, ReconcileResult
from meshplane.controlplane.renderer import Renderings
from meshplane.models.controlplane import ControlPlane
from meshplane.models.resources import ResourceKey
from meshplane.models.status import ConditionReason, ConditionStatus, ConditionType, ControlPlaneStatus
from tests.unit.fakes import FakeResourceClient

NS = "istio-system"
SMCP = ResourceKey("maistra.io/v1", "ServiceMeshControlPlane", NS, "basic")
NAMESPACE = ResourceKey("v1", "Namespace", "", NS)

ISTIO_CM = ResourceKey("v1", "ConfigMap", NS, "istio")
CITADEL = ResourceKey("apps/v1", "Deployment", NS, "istio-citadel")
GALLEY = ResourceKey("apps/v1", "Deployment", NS, "istio-galley")
GALLEY_WEBHOOK = ResourceKey("admissionregistration.k8s.io/v1", "ValidatingWebhookConfiguration", "", "istio-galley")
PILOT = ResourceKey("apps/v1", "Deployment", NS, "istio-pilot")
PILOT_SVC = ResourceKey("v1", "Service", NS, "istio-pilot")
READER_ROLE = ResourceKey("rbac.authorization.k8s.io/v1", "Role", "kube-system", "istio-reader")
INJECTOR = ResourceKey("apps/v1", "Deployment", NS, "istio-sidecar-injector")
INJECTOR_WEBHOOK = ResourceKey(
    "admissionregistration.k8s.io/v1", "MutatingWebhookConfiguration", "", "istio-sidecar-injector"
)
EXTRA_CM = ResourceKey("v1", "ConfigMap", NS, "extra")
ADAPTER = ResourceKey("apps/v1", "Deployment", NS, "3scale-istio-adapter")
IGNORED_CM = ResourceKey("v1", "ConfigMap", NS, "ignored")

FULL_ORDER = [
    "istio",
    "istio/charts/security",
    "istio/charts/galley",
    "istio/charts/pilot",
    "istio/charts/sidecarInjectorWebhook",
    "istio/charts/zextra",
    "maistra-threescale",
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _doc(key: ResourceKey, body: str = "") -> str:
    lines = [f"apiVersion: {key.api_version}", f"kind: {key.kind}", "metadata:", f"  name: {key.name}"]
    if key.namespace:
        lines.append(f"  namespace: {key.namespace}")
    return "\n".join(lines) + "\n" + body


def _deployment(key: ResourceKey) -> str:
    return _doc(key, "spec:\n  replicas: 1\n")


def _webhook(key: ResourceKey) -> str:
    return _doc(
        key,
        f"webhooks:\n- name: {key.name}.istio.io\n  clientConfig:\n    service:\n      name: {key.name}\n"
        f"      namespace: {NS}\n",
    )


def _component(name: str, *documents: str) -> list[Manifest]:
    return [Manifest(name=f"{name}/templates/all.yaml", content="\n---\n".join(documents))]


def _mesh() -> dict[str, list[Manifest]]:
    return {
        "istio": _component("istio", _doc(ISTIO_CM, "data:\n  mesh: '{}'\n")),
        "istio/charts/security": _component("istio/charts/security", _deployment(CITADEL)),
        "istio/charts/galley": _component("istio/charts/galley", _deployment(GALLEY), _webhook(GALLEY_WEBHOOK)),
        "istio/charts/pilot": _component(
            "istio/charts/pilot", _deployment(PILOT), _doc(PILOT_SVC), _doc(READER_ROLE, "rules: []\n")
        ),
        "istio/charts/sidecarInjectorWebhook": _component(
            "istio/charts/sidecarInjectorWebhook", _deployment(INJECTOR), _webhook(INJECTOR_WEBHOOK)
        ),
        "istio/charts/zextra": _component("istio/charts/zextra", _doc(EXTRA_CM)),
        "maistra-threescale": _component("maistra-threescale", _deployment(ADAPTER)),
        "other/chart": _component("other/chart", _doc(IGNORED_CM)),
    }


class _StaticRenderer:
    def __init__(self, renderings: Renderings) -> None:
        self.renderings = renderings

    def render(self, instance: ControlPlane) -> Renderings:
        return {name: list(manifests) for name, manifests in self.renderings.items()}


class _FailingRenderer:
    def render(self, instance: ControlPlane) -> Renderings:
        raise RenderError([ValueError("values.global.hub is required")])


class _ThreadRecordingRenderer(_StaticRenderer):
    thread_id: int | None = None

    def render(self, instance: ControlPlane) -> Renderings:
        self.thread_id = threading.get_ident()
        return super().render(instance)


def _cluster(auto_ready: bool = True) -> FakeResourceClient:
    client = FakeResourceClient(auto_ready=auto_ready)
    client.seed({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": NS}})
    client.seed(
        {
            "apiVersion": SMCP.api_version,
            "kind": SMCP.kind,
            "metadata": {"name": SMCP.name, "namespace": NS, "generation": 1, "uid": "uid-1"},
            "spec": {},
        }
    )
    return client


async def _pass(
    client: FakeResourceClient,
    renderings: Renderings | None = None,
    generation: int | None = None,
    renderer: Any = None,
    **kwargs: Any,
) -> ReconcileResult:
    obj = client.objects[SMCP]
    if generation is not None:
        obj["metadata"]["generation"] = generation
    instance = ControlPlane.from_object(obj)
    if renderer is None:
        renderer = _StaticRenderer(renderings if renderings is not None else _mesh())
    return await ControlPlaneReconciler(client, instance, renderer, **kwargs).reconcile()


def _status(client: FakeResourceClient) -> ControlPlaneStatus:
    return ControlPlaneStatus.from_object(client.objects[SMCP].get("status"))


def _names(client: FakeResourceClient) -> list[str]:
    return [component.resource for component in _status(client).components]


def _without_timestamps(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _without_timestamps(v) for k, v in value.items() if k != "lastTransitionTime"}
    if isinstance(value, list):
        return [_without_timestamps(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Fresh install
# ---------------------------------------------------------------------------


class TestFreshInstall:
    @pytest.mark.asyncio
    async def test_components_processed_in_order(self) -> None:
        client = _cluster()
        result = await _pass(client)

        assert result == ReconcileResult()
        assert client.created == [
            ISTIO_CM,
            CITADEL,
            GALLEY,
            GALLEY_WEBHOOK,
            PILOT,
            PILOT_SVC,
            READER_ROLE,
            INJECTOR,
            INJECTOR_WEBHOOK,
            EXTRA_CM,
            ADAPTER,
        ]
        assert _names(client) == FULL_ORDER

    @pytest.mark.asyncio
    async def test_components_outside_prefix_are_not_installed(self) -> None:
        client = _cluster()
        await _pass(client)
        assert IGNORED_CM not in client.objects
        assert "other/chart" not in _names(client)

    @pytest.mark.asyncio
    async def test_top_level_conditions(self) -> None:
        client = _cluster()
        await _pass(client)
        status = _status(client)
        assert status.observed_generation == 1
        reconciled = status.get_condition(ConditionType.RECONCILED)
        assert reconciled.status == ConditionStatus.TRUE
        assert reconciled.reason == ConditionReason.INSTALL_SUCCESSFUL
        ready = status.get_condition(ConditionType.READY)
        assert ready.status == ConditionStatus.TRUE
        assert ready.reason == ConditionReason.COMPONENTS_READY
        for component in status.components:
            assert component.is_condition_true(ConditionType.INSTALLED)
            assert component.observed_generation == 1

    @pytest.mark.asyncio
    async def test_namespace_is_labelled(self) -> None:
        client = _cluster()
        await _pass(client)
        labels = client.objects[NAMESPACE]["metadata"]["labels"]
        assert labels[IGNORE_NAMESPACE_LABEL] == "ignore"
        assert labels[MEMBER_OF_LABEL] == NS

    @pytest.mark.asyncio
    async def test_cross_namespace_object_is_annotated_not_owned(self) -> None:
        client = _cluster()
        await _pass(client)
        metadata = client.objects[READER_ROLE]["metadata"]
        assert "ownerReferences" not in metadata
        assert metadata["annotations"][GENERATION_ANNOTATION] == "1"
        assert client.objects[PILOT]["metadata"]["ownerReferences"][0]["uid"] == "uid-1"


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_pass_makes_no_changes(self) -> None:
        client = _cluster()
        await _pass(client)
        first = client.objects[SMCP]["status"]
        client.reset_calls()

        result = await _pass(client)

        assert result == ReconcileResult()
        assert client.mutations() == 0
        second = client.objects[SMCP]["status"]
        assert second["components"] == first["components"]
        reconciled = _status(client).get_condition(ConditionType.RECONCILED)
        assert reconciled.status == ConditionStatus.TRUE
        assert reconciled.reason == ConditionReason.UPDATE_SUCCESSFUL

    @pytest.mark.asyncio
    async def test_status_is_stable_across_passes(self) -> None:
        client = _cluster()
        await _pass(client)
        await _pass(client)
        second = client.objects[SMCP]["status"]
        await _pass(client)
        third = client.objects[SMCP]["status"]
        assert _without_timestamps(third) == _without_timestamps(second)


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


class TestConvergence:
    @pytest.mark.asyncio
    async def test_removed_component_and_resources_are_deleted(self) -> None:
        client = _cluster()
        await _pass(client)
        client.reset_calls()

        mesh = _mesh()
        del mesh["istio/charts/zextra"]
        mesh["istio/charts/pilot"] = _component("istio/charts/pilot", _deployment(PILOT))
        result = await _pass(client, mesh, generation=2)

        assert result == ReconcileResult()
        deleted = [key for key, _ in client.deleted]
        assert set(deleted) == {READER_ROLE, PILOT_SVC, EXTRA_CM}
        for key in deleted:
            assert key not in client.objects
        assert "istio/charts/zextra" not in _names(client)
        pilot = _status(client).find_component_by_name("istio/charts/pilot")
        assert pilot is not None
        assert [r.key for r in pilot.resources] == [PILOT]

    @pytest.mark.asyncio
    async def test_new_generation_is_stamped_on_kept_objects(self) -> None:
        client = _cluster()
        await _pass(client)
        await _pass(client, generation=2)
        for key in (ISTIO_CM, PILOT, READER_ROLE, GALLEY_WEBHOOK):
            assert client.objects[key]["metadata"]["annotations"][GENERATION_ANNOTATION] == "2"
        assert _status(client).observed_generation == 2

    @pytest.mark.asyncio
    async def test_trailing_component_removed_when_disabled(self) -> None:
        client = _cluster()
        await _pass(client)
        mesh = _mesh()
        del mesh["maistra-threescale"]
        await _pass(client, mesh)
        assert ADAPTER not in client.objects
        assert "maistra-threescale" not in _names(client)


class TestTwoComponentScenario:
    @pytest.mark.asyncio
    async def test_removing_a_component(self) -> None:
        ca_deploy = ResourceKey("apps/v1", "Deployment", NS, "cert-authority")
        ca_secret = ResourceKey("v1", "Secret", NS, "ca-root")
        core = [
            ResourceKey("apps/v1", "Deployment", NS, "core"),
            ResourceKey("v1", "Service", NS, "core"),
            ResourceKey("v1", "ConfigMap", NS, "core"),
        ]
        renderings = {
            "cert-authority": _component("cert-authority", _deployment(ca_deploy), _doc(ca_secret)),
            "core": _component("core", *(_doc(key) for key in core)),
        }
        options: dict[str, Any] = {
            "hooks": HookRegistry(),
            "ordered_components": ("cert-authority", "core"),
            "trailing_components": (),
        }
        client = _cluster()

        await _pass(client, renderings, **options)
        assert len(client.created) == 5
        assert _names(client) == ["cert-authority", "core"]
        assert _status(client).is_condition_true(ConditionType.RECONCILED)

        client.reset_calls()
        await _pass(client, {"core": renderings["core"]}, **options)
        assert sorted(key for key, _ in client.deleted) == sorted([ca_deploy, ca_secret])
        assert client.patches == []
        assert client.created == []
        assert _names(client) == ["core"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailFast:
    @pytest.mark.asyncio
    async def test_first_component_failure_stops_the_pass(self) -> None:
        client = _cluster()
        client.fail("create", ISTIO_CM, status=403, reason="Forbidden")

        with pytest.raises(AggregateError):
            await _pass(client)

        assert client.created == []
        assert _names(client) == ["istio"]
        reconciled = _status(client).get_condition(ConditionType.RECONCILED)
        assert reconciled.status == ConditionStatus.FALSE
        assert reconciled.reason == ConditionReason.INSTALL_ERROR
        assert "Forbidden" in reconciled.message

    @pytest.mark.asyncio
    async def test_later_components_are_not_attempted(self) -> None:
        client = _cluster()
        client.fail("create", PILOT, status=500)

        with pytest.raises(AggregateError):
            await _pass(client)

        # siblings inside the failing component still go through
        assert PILOT_SVC in client.objects
        for key in (INJECTOR, EXTRA_CM, ADAPTER):
            assert key not in client.objects
        assert _names(client) == FULL_ORDER[:4]

    @pytest.mark.asyncio
    async def test_unreached_components_keep_previous_status(self) -> None:
        client = _cluster()
        await _pass(client)
        before = _status(client)
        client.objects[PILOT]["spec"]["replicas"] = 3
        client.fail("patch", PILOT, status=409, reason="Conflict")

        with pytest.raises(AggregateError):
            await _pass(client)

        after = _status(client)
        assert [c.resource for c in after.components] == FULL_ORDER
        for name in FULL_ORDER[4:]:
            assert after.find_component_by_name(name) == before.find_component_by_name(name)
        pilot = after.find_component_by_name("istio/charts/pilot")
        assert pilot is not None
        assert pilot.get_condition(ConditionType.RECONCILED).reason == ConditionReason.UPDATE_ERROR
        assert after.get_condition(ConditionType.RECONCILED).reason == ConditionReason.UPDATE_ERROR

    @pytest.mark.asyncio
    async def test_recovery_after_failure(self) -> None:
        client = _cluster()
        client.fail("create", ISTIO_CM, status=403, reason="Forbidden")
        with pytest.raises(AggregateError):
            await _pass(client)
        client.clear_failures()

        result = await _pass(client)

        assert result == ReconcileResult()
        assert _status(client).is_condition_true(ConditionType.RECONCILED)
        assert _names(client) == FULL_ORDER


class TestReadinessGating:
    @pytest.mark.asyncio
    async def test_not_ready_requeues_without_failing(self) -> None:
        client = _cluster(auto_ready=False)

        result = await _pass(client)

        assert result == ReconcileResult(requeue=True, requeue_after=5.0)
        status = _status(client)
        ready = status.get_condition(ConditionType.READY)
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == ConditionReason.COMPONENT_NOT_READY
        assert "istio-citadel" in ready.message
        assert status.get_condition(ConditionType.RECONCILED).status == ConditionStatus.UNKNOWN
        assert _names(client) == ["istio", "istio/charts/security"]
        assert GALLEY not in client.objects

    @pytest.mark.asyncio
    async def test_pass_continues_once_ready(self) -> None:
        client = _cluster(auto_ready=False)
        await _pass(client)
        client.objects[CITADEL]["status"] = {"readyReplicas": 1}
        client.auto_ready = True

        result = await _pass(client)

        assert result == ReconcileResult()
        assert _status(client).is_condition_true(ConditionType.READY)
        assert _names(client) == FULL_ORDER

    @pytest.mark.asyncio
    async def test_webhook_without_ca_bundle_is_not_ready(self) -> None:
        client = _cluster(auto_ready=False)
        client.seed(
            {
                "apiVersion": "apps/v1",
                "kind": "Deployment",
                "metadata": {"name": CITADEL.name, "namespace": NS},
                "status": {"readyReplicas": 1},
            }
        )

        result = await _pass(client)

        assert result.requeue is True
        assert "caBundle in ValidatingWebhookConfiguration istio-galley" in (
            _status(client).get_condition(ConditionType.READY).message
        )

    @pytest.mark.asyncio
    async def test_requeue_delay_is_configurable(self) -> None:
        client = _cluster(auto_ready=False)
        result = await _pass(client, not_ready_requeue_seconds=12.0)
        assert result.requeue_after == 12.0


class TestPassFailures:
    @pytest.mark.asyncio
    async def test_render_error_applies_nothing(self) -> None:
        client = _cluster()
        with pytest.raises(RenderError):
            await _pass(client, renderer=_FailingRenderer())
        assert client.created == []
        assert client.updated == []
        reconciled = _status(client).get_condition(ConditionType.RECONCILED)
        assert reconciled.status == ConditionStatus.FALSE
        assert "values.global.hub is required" in reconciled.message

    @pytest.mark.asyncio
    async def test_rendering_runs_off_the_event_loop(self) -> None:
        client = _cluster()
        renderer = _ThreadRecordingRenderer(_mesh())
        await _pass(client, renderer=renderer)
        assert renderer.thread_id is not None
        assert renderer.thread_id != threading.get_ident()
        assert ISTIO_CM in client.objects

    @pytest.mark.asyncio
    async def test_missing_namespace_aborts(self) -> None:
        client = _cluster()
        del client.objects[NAMESPACE]
        with pytest.raises(NamespaceLabelError):
            await _pass(client)
        assert client.created == []
        assert _status(client).get_condition(ConditionType.RECONCILED).status == ConditionStatus.FALSE

    @pytest.mark.asyncio
    async def test_namespace_update_failure_aborts(self) -> None:
        client = _cluster()
        client.fail("update", NAMESPACE, status=403, reason="Forbidden")
        with pytest.raises(NamespaceLabelError, match="error labelling namespace"):
            await _pass(client)

    @pytest.mark.asyncio
    async def test_status_persist_failure_requeues(self) -> None:
        client = _cluster()
        client.fail("patch_status", SMCP, status=409, reason="Conflict")
        result = await _pass(client)
        assert result == ReconcileResult(requeue=True)
        assert ADAPTER in client.objects
        assert "status" not in client.objects[SMCP]


# ---------------------------------------------------------------------------
# Generation sweep
# ---------------------------------------------------------------------------


class TestGenerationSweep:
    @staticmethod
    def _leftover(name: str, owner: str, generation: str) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": NS,
                "labels": {OWNER_LABEL: owner},
                "annotations": {GENERATION_ANNOTATION: generation},
            },
        }

    @pytest.mark.asyncio
    async def test_untracked_stale_objects_are_removed(self) -> None:
        client = _cluster()
        stale = client.seed(self._leftover("leftover", NS, "0"))
        foreign = client.seed(self._leftover("foreign", "other-mesh", "0"))

        await _pass(client)

        assert stale not in client.objects
        assert foreign in client.objects

    @pytest.mark.asyncio
    async def test_owner_labelled_objects_without_generation_survive(self) -> None:
        client = _cluster()
        member_binding = client.seed(
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "RoleBinding",
                "metadata": {"name": "istio-member", "namespace": "bookinfo", "labels": {OWNER_LABEL: NS}},
            }
        )

        await _pass(client)

        assert member_binding in client.objects
        assert all(key != member_binding for key, _ in client.deleted)

    @pytest.mark.asyncio
    async def test_sweep_can_be_disabled(self) -> None:
        client = _cluster()
        stale = client.seed(self._leftover("leftover", NS, "0"))
        await _pass(client, prunable_kinds=())
        assert stale in client.objects
