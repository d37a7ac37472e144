"""Environment variable configuration loader.

Every setting is read from a ``MESHPLANE_*`` variable.  Numeric values are
clamped to sane bounds; unparseable values raise :class:`ValueError` so a
misconfigured operator fails at startup instead of mid-reconcile.
"""

from __future__ import annotations

import os

from meshplane.models.config import (
    DEFAULT_CHART_PATH,
    ChartConfig,
    LogConfig,
    MeshPlaneConfig,
    MetricsConfig,
    ReconcileConfig,
)

_PREFIX = "MESHPLANE_"

_VALID_LOG_LEVELS: frozenset[str] = frozenset({"debug", "info", "warning", "error"})
_TRUTHY: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSY: frozenset[str] = frozenset({"0", "false", "no", "off"})


def _env(name: str) -> str | None:
    value = os.environ.get(_PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_str(name: str, default: str) -> str:
    value = _env(name)
    return default if value is None else value


def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as err:
        raise ValueError(f"Invalid integer for {_PREFIX}{name}: {value!r}") from err
    return max(minimum, min(maximum, parsed))


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"Invalid boolean for {_PREFIX}{name}: {value!r}")


def _log_level(value: str) -> str:
    level = value.lower()
    if level not in _VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {value!r} (expected one of {sorted(_VALID_LOG_LEVELS)})")
    return level


def _metrics_port(default: int) -> int:
    value = _env("METRICS_PORT")
    if value is None:
        return default
    # 0 disables the metrics endpoint and is exempt from clamping
    if value == "0":
        return 0
    return _env_int("METRICS_PORT", default, 1024, 65535)


def load_config() -> MeshPlaneConfig:
    """Build a :class:`MeshPlaneConfig` from the current environment."""
    return MeshPlaneConfig(
        log=LogConfig(level=_log_level(_env_str("LOG_LEVEL", "info"))),
        charts=ChartConfig(path=_env_str("CHART_PATH", DEFAULT_CHART_PATH)),
        reconcile=ReconcileConfig(
            not_ready_requeue_seconds=_env_int("NOT_READY_REQUEUE_SECONDS", 5, 1, 300),
            interval_seconds=_env_int("RECONCILE_INTERVAL_SECONDS", 300, 10, 3600),
            prune_enabled=_env_bool("PRUNE_ENABLED", True),
        ),
        metrics=MetricsConfig(port=_metrics_port(9090)),
    )
