"""Configuration data structures for meshplane."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class LogConfig:
    level: str = "info"


DEFAULT_CHART_PATH = "/usr/local/share/meshplane/charts"


@dataclass(frozen=True)
class ChartConfig:
    path: str = DEFAULT_CHART_PATH


@dataclass(frozen=True)
class ReconcileConfig:
    """Timing and pruning knobs for the reconcile loop."""

    not_ready_requeue_seconds: int = 5
    interval_seconds: int = 300
    prune_enabled: bool = True


@dataclass(frozen=True)
class MetricsConfig:
    port: int = 9090

    @property
    def enabled(self) -> bool:
        return self.port != 0


@dataclass(frozen=True)
class MeshPlaneConfig:
    """Top-level configuration, loaded from MESHPLANE_* environment variables."""

    log: LogConfig = field(default_factory=LogConfig)
    charts: ChartConfig = field(default_factory=ChartConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
