"""Labels, annotations and component names shared across the reconciler.

The label and annotation keys are a wire contract with objects already in
the cluster; pruning depends on them matching exactly.
"""

from __future__ import annotations

from typing import Final

# Stamped on every managed object
OWNER_LABEL: Final[str] = "maistra.io/owner"
GENERATION_ANNOTATION: Final[str] = "maistra.io/mesh-generation"

# Ensured on the control plane namespace
IGNORE_NAMESPACE_LABEL: Final[str] = "maistra.io/ignore-namespace"
IGNORE_NAMESPACE_VALUE: Final[str] = "ignore"
MEMBER_OF_LABEL: Final[str] = "maistra.io/member-of"

# Components with hard install-order dependencies, installed first and in this order
ORDERED_COMPONENTS: Final[tuple[str, ...]] = (
    "istio",
    "istio/charts/istio_cni",
    "istio/charts/security",
    "istio/charts/prometheus",
    "istio/charts/tracing",
    "istio/charts/galley",
    "istio/charts/mixer",
    "istio/charts/pilot",
    "istio/charts/gateways",
    "istio/charts/sidecarInjectorWebhook",
    "istio/charts/grafana",
    "istio/charts/kiali",
)

# Only rendered components under this prefix are picked up after the ordered ones
COMPONENT_PREFIX: Final[str] = "istio/"

THREESCALE_COMPONENT: Final[str] = "maistra-threescale"
TRAILING_COMPONENTS: Final[tuple[str, ...]] = (THREESCALE_COMPONENT,)

GALLEY_COMPONENT: Final[str] = "istio/charts/galley"
SIDECAR_INJECTOR_COMPONENT: Final[str] = "istio/charts/sidecarInjectorWebhook"

NOT_READY_REQUEUE_SECONDS: Final[float] = 5.0

# (apiVersion, kind) pairs swept by generation after every successful pass
PRUNABLE_KINDS: Final[tuple[tuple[str, str], ...]] = (
    ("apps/v1", "Deployment"),
    ("apps/v1", "DaemonSet"),
    ("apps/v1", "StatefulSet"),
    ("autoscaling/v2", "HorizontalPodAutoscaler"),
    ("policy/v1", "PodDisruptionBudget"),
    ("v1", "Service"),
    ("v1", "ConfigMap"),
    ("v1", "Secret"),
    ("v1", "ServiceAccount"),
    ("rbac.authorization.k8s.io/v1", "Role"),
    ("rbac.authorization.k8s.io/v1", "RoleBinding"),
    ("rbac.authorization.k8s.io/v1", "ClusterRole"),
    ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding"),
    ("admissionregistration.k8s.io/v1", "MutatingWebhookConfiguration"),
    ("admissionregistration.k8s.io/v1", "ValidatingWebhookConfiguration"),
)
