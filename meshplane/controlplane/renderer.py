"""Renderer adapters: desired state -> {component name: [Manifest, ...]}.

Chart templating is not done here.  A :class:`ChartRenderer` turns one
chart plus its values into component renderings; :class:`CompositeRenderer`
merges several charts into the single map the reconciler consumes and gates
add-on charts on their ``enabled`` value.

:class:`DirectoryRenderer` reads pre-rendered output laid out the way
``helm template --output-dir`` writes it::

    <root>/istio/templates/configmap.yaml              -> component "istio"
    <root>/istio/charts/galley/templates/deploy.yaml   -> component "istio/charts/galley"
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from meshplane.controlplane.errors import RenderError
from meshplane.controlplane.manifest import Manifest
from meshplane.models.controlplane import ControlPlane
from meshplane.observability.logging import get_logger

_log = get_logger("renderer")

Renderings = dict[str, list[Manifest]]

_TEMPLATES_DIR = "templates"


@runtime_checkable
class Renderer(Protocol):
    """What the reconciler needs: one call per pass, all components at once."""

    def render(self, instance: ControlPlane) -> Renderings: ...


@runtime_checkable
class ChartRenderer(Protocol):
    def render_chart(self, chart: str, namespace: str, values: dict[str, Any]) -> Renderings: ...


@dataclass(frozen=True)
class ChartSource:
    """One chart to render and the spec section holding its values.

    Add-on charts are rendered only when their values say ``enabled: true``.
    """

    chart: str
    values_key: str
    addon: bool = False


DEFAULT_CHARTS: tuple[ChartSource, ...] = (
    ChartSource(chart="istio", values_key="istio"),
    ChartSource(chart="maistra-threescale", values_key="threeScale", addon=True),
)


def is_enabled(values: dict[str, Any]) -> bool:
    """True only when ``values["enabled"]`` is the boolean True."""
    enabled = values.get("enabled")
    return enabled if isinstance(enabled, bool) else False


class CompositeRenderer:
    """Render several charts and merge their component maps."""

    def __init__(self, chart_renderer: ChartRenderer, charts: Sequence[ChartSource] = DEFAULT_CHARTS) -> None:
        self._chart_renderer = chart_renderer
        self._charts = tuple(charts)

    def render(self, instance: ControlPlane) -> Renderings:
        """Render every chart; raise one RenderError collecting all failures."""
        errors: list[Exception] = []
        rendered: list[Renderings] = []
        for source in self._charts:
            values = instance.values(source.values_key)
            if source.addon and not is_enabled(values):
                _log.debug("chart_disabled", chart=source.chart)
                continue
            _log.debug("rendering_chart", chart=source.chart)
            try:
                rendered.append(self._chart_renderer.render_chart(source.chart, instance.namespace, values))
            except (RenderError, OSError, ValueError) as exc:
                _log.error("chart_render_failed", chart=source.chart, error=str(exc))
                errors.append(exc)

        aggregate = RenderError.from_errors(errors)
        if aggregate is not None:
            raise aggregate

        merged: Renderings = {}
        for renderings in rendered:
            merged.update(renderings)
        return merged


class DirectoryRenderer:
    """:class:`ChartRenderer` over a directory of pre-rendered manifests.

    Values are not applied; the files are taken as-is.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def render_chart(self, chart: str, namespace: str, values: dict[str, Any]) -> Renderings:
        chart_dir = self._root / chart
        if not chart_dir.is_dir():
            raise RenderError([FileNotFoundError(f"chart directory not found: {chart_dir}")])

        renderings: Renderings = {}
        for path in sorted(p for p in chart_dir.rglob("*") if p.is_file()):
            relative = path.relative_to(self._root)
            component = _component_name(relative)
            content = path.read_text(encoding="utf-8")
            renderings.setdefault(component, []).append(Manifest(name=relative.as_posix(), content=content))
        return renderings


def _component_name(relative: Path) -> str:
    """Component a rendered file belongs to: its path up to ``templates/``."""
    parts = relative.parts[:-1]
    if _TEMPLATES_DIR in parts:
        parts = parts[: parts.index(_TEMPLATES_DIR)]
    return "/".join(parts)
