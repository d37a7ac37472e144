"""meshplane command-line interface.

Commands:
    meshplane reconcile NAME -n NS [--charts DIR] [--loop]   Run a reconciliation pass.
    meshplane status NAME -n NS                              Show the persisted status.
    meshplane version                                        Print version and exit.

Cluster access uses the in-cluster service account when available and the
local kubeconfig otherwise.  Other settings come from MESHPLANE_* variables.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import click
from kubernetes_asyncio.client.exceptions import ApiException

from meshplane import __version__
from meshplane.app import MeshPlaneApp
from meshplane.config import load_config
from meshplane.controlplane.errors import ReconcileError
from meshplane.controlplane.reconciler import ReconcileResult
from meshplane.models.status import ConditionStatus, ConditionType, ControlPlaneStatus, StatusType

# ---------------------------------------------------------------------------
# Colour helpers
# ---------------------------------------------------------------------------

_CONDITION_COLORS: dict[str, str] = {
    ConditionStatus.TRUE: "green",
    ConditionStatus.FALSE: "red",
    ConditionStatus.UNKNOWN: "yellow",
}


def _styled_condition(status: StatusType, condition_type: ConditionType) -> str:
    condition = status.get_condition(condition_type)
    color = _CONDITION_COLORS.get(condition.status, "white")
    text = f"{condition_type}={condition.status}"
    if condition.reason:
        text += f" ({condition.reason})"
    return click.style(text, fg=color)


def _print_status(status: ControlPlaneStatus) -> None:
    click.echo(
        f"observedGeneration: {status.observed_generation}  "
        f"{_styled_condition(status, ConditionType.RECONCILED)}  "
        f"{_styled_condition(status, ConditionType.READY)}"
    )
    message = status.get_condition(ConditionType.RECONCILED).message
    if message:
        click.echo(f"  message: {message}")
    for component in status.components:
        click.echo(
            f"  {click.style(component.resource, bold=True)}: "
            f"{_styled_condition(component, ConditionType.INSTALLED)}  "
            f"{_styled_condition(component, ConditionType.RECONCILED)}  "
            f"resources={len(component.resources)}"
        )


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
def cli() -> None:
    """meshplane - service mesh control plane reconciler."""


@cli.command()
def version() -> None:
    """Print the meshplane version."""
    click.echo(f"meshplane {__version__}")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", required=True, help="Namespace of the control plane resource.")
@click.option("--charts", "charts", default=None, help="Directory of rendered charts (overrides MESHPLANE_CHART_PATH).")
@click.option("--loop", is_flag=True, default=False, help="Keep reconciling until interrupted.")
def reconcile(name: str, namespace: str, charts: str | None, loop: bool) -> None:
    """Reconcile the control plane NAME in NAMESPACE."""
    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    if charts is not None:
        config = replace(config, charts=replace(config.charts, path=charts))
    if not loop:
        # a single pass does not need a scrape endpoint
        config = replace(config, metrics=replace(config.metrics, port=0))

    app = MeshPlaneApp(config=config)
    try:
        result = asyncio.run(_reconcile(app, name, namespace, loop))
    except KeyboardInterrupt:
        return
    except (ReconcileError, ApiException) as exc:
        raise click.ClickException(f"reconciliation failed: {exc}") from exc
    if result is None:
        return
    if result.requeue:
        click.echo(click.style(f"requeue requested (after {result.requeue_after}s)", fg="yellow"))
    else:
        click.echo(click.style("reconciliation complete", fg="green"))


async def _reconcile(app: MeshPlaneApp, name: str, namespace: str, loop: bool) -> ReconcileResult | None:
    await app.start()
    try:
        if loop:
            await app.run(name, namespace)
            return None
        result = await app.reconcile_once(name, namespace)
        instance = await app.fetch_instance(name, namespace)
        _print_status(instance.status)
        return result
    finally:
        await app.stop()


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", required=True, help="Namespace of the control plane resource.")
def status(name: str, namespace: str) -> None:
    """Show the persisted status of control plane NAME."""
    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    app = MeshPlaneApp(config=replace(config, metrics=replace(config.metrics, port=0)))
    try:
        control_plane_status = asyncio.run(_fetch_status(app, name, namespace))
    except ApiException as exc:
        raise click.ClickException(f"cannot read {namespace}/{name}: {exc.status} {exc.reason}") from exc
    except ReconcileError as exc:
        raise click.ClickException(str(exc)) from exc
    _print_status(control_plane_status)


async def _fetch_status(app: MeshPlaneApp, name: str, namespace: str) -> ControlPlaneStatus:
    await app.start()
    try:
        instance = await app.fetch_instance(name, namespace)
        return instance.status
    finally:
        await app.stop()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
