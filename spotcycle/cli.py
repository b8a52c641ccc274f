"""spotcycle CLI -- powered by Typer."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from spotcycle.api import SpotClient
from spotcycle.choices import LayeredChoices, PresetChoices, PromptChoices
from spotcycle.config import DEFAULT_WAIT_TIMEOUT, Settings
from spotcycle.deploy import HelmDeployer
from spotcycle.exceptions import SpotCycleError, ValidationError
from spotcycle.infra import TerraformWorkspace
from spotcycle.kube import Kubectl
from spotcycle.lifecycle import DEFAULT_REGION, Orchestrator, StatusReport
from spotcycle.models import LifecycleReport
from spotcycle.monitor import DEFAULT_INTERVAL, MarketMonitor
from spotcycle.pricing import DEFAULT_METRIC, METRICS, BidStrategy, monthly_cost
from spotcycle.session import Session

app = typer.Typer(
    name="spotcycle",
    help="Provision, pause and resume a spot Kubernetes workload. State survives every pause.",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

OUTPUTS = ("table", "json")

DryRun = typer.Option(False, "--dry-run", help="Print every mutation instead of performing it")
Debug = typer.Option(False, "--debug", help="Log API requests and responses")
RegionOpt = typer.Option(None, "--region", help="Region code, e.g. us-central-dfw-1")
Output = typer.Option("table", "--output", "-o", help="Result format: table or json")
Yes = typer.Option(False, "--yes", "-y", help="Never prompt; accept defaults for unset choices")
Timeout = typer.Option(DEFAULT_WAIT_TIMEOUT, "--timeout", min=1, help="Seconds to wait for the cluster to settle")
Metric = typer.Option(DEFAULT_METRIC, "--metric", help=f"Ranking metric: {', '.join(METRICS)}")
Nodes = typer.Option(None, "--nodes", "-n", min=1, help="Node count")


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


@contextmanager
def _errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SpotCycleError as e:
        err_console.print(f"[red bold]Error:[/red bold] {operation} failed: {e}")
        if e.hint:
            err_console.print(f"[yellow]Hint:[/yellow] {e.hint}")
        raise typer.Exit(code=1) from None


def _check_output(output: str) -> str:
    if output not in OUTPUTS:
        raise typer.BadParameter(f"must be one of: {', '.join(OUTPUTS)}", param_hint="--output")
    return output


def _orchestrator(
    settings: Settings,
    client: SpotClient,
    session: Session,
    answers: dict,
    yes: bool,
    dry_run: bool,
    metric: str = DEFAULT_METRIC,
) -> Orchestrator:
    preset = PresetChoices(answers)
    choices = preset if yes else LayeredChoices(preset, PromptChoices(err_console))
    deployer = HelmDeployer(
        release=settings.helm_release,
        chart=settings.helm_chart,
        namespace=settings.workload_namespace,
        values_file=settings.helm_values,
        service_type=settings.service_type,
        repo_url=settings.helm_repo,
    )
    return Orchestrator(
        session,
        client,
        choices,
        TerraformWorkspace(settings.terraform_dir),
        Kubectl,
        deployer,
        settings=settings,
        dry_run=dry_run,
        metric=metric,
    )


def _render(report: LifecycleReport, output: str) -> None:
    if output == "json":
        typer.echo(json.dumps(report.as_dict(), indent=2))
        return
    table = Table(title=f"{report.operation} ({report.state.value})", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in report.as_dict().items():
        if key in ("operation", "state", "planned") or value is None:
            continue
        table.add_row(key, str(value))
    console.print(table)
    if report.dry_run:
        console.print(f"[yellow]Dry run: {len(report.planned)} change(s) skipped.[/yellow]")


def _render_status(report: StatusReport, output: str) -> None:
    if output == "json":
        typer.echo(json.dumps(report.as_dict(), indent=2))
        return
    styles = {"ok": "green", "warn": "yellow", "fail": "red", "skipped": "dim"}
    table = Table(title=f"Status ({report.state.value})", show_header=True)
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Detail")
    for check in report.checks:
        style = styles.get(check.status, "")
        table.add_row(check.name, f"[{style}]{check.status}[/{style}]", check.detail)
    console.print(table)


def _monitor(client: SpotClient, region: str, server_class: str, interval: float) -> None:
    err_console.print(
        f"Monitoring [bold]{server_class}[/bold] in [bold]{region}[/bold] every {interval:g}s. "
        "Press Ctrl+C to stop."
    )
    with MarketMonitor(client, region, server_class, interval=interval) as monitor:
        try:
            monitor.wait()
        except KeyboardInterrupt:
            err_console.print("Stopping price monitor.")


@app.command()
def provision(
    dry_run: bool = DryRun,
    debug: bool = Debug,
    region: Optional[str] = RegionOpt,
    output: str = Output,
    yes: bool = Yes,
    metric: str = Metric,
    server_class: Optional[str] = typer.Option(None, "--server-class", help="Server class code (default: best ranked)"),
    bid_strategy: Optional[BidStrategy] = typer.Option(None, "--bid-strategy", help="Bid management strategy"),
    bid: Optional[float] = typer.Option(None, "--bid", help="Custom bid in $/hr (implies --bid-strategy custom)"),
    nodes: Optional[int] = Nodes,
    cloudspace: Optional[str] = typer.Option(None, "--cloudspace", help="Existing cloudspace id, or 'new'"),
    storage_class: Optional[str] = typer.Option(None, "--storage-class", help="Storage class for the region generation"),
    timeout: int = Timeout,
    monitor: bool = typer.Option(False, "--monitor", help="Watch the market price after provisioning"),
) -> None:
    """Create the cloudspace and node pool, then deploy the workload."""
    _configure_logging(debug)
    _check_output(output)
    if bid is not None and bid_strategy is None:
        bid_strategy = BidStrategy.CUSTOM
    answers = {
        "server_class": server_class,
        "bid_strategy": bid_strategy.value if bid_strategy else None,
        "bid": bid,
        "nodes": nodes,
        "cloudspace": cloudspace,
        "storage_class": storage_class,
    }
    with _errors("provision"):
        if metric not in METRICS:
            raise ValidationError(f"Unknown metric '{metric}'. Valid options: {', '.join(METRICS)}")
        settings = Settings.from_env(region=region, wait_timeout=timeout)
        session = Session.from_settings(settings)
        with SpotClient(session) as client:
            report = _orchestrator(settings, client, session, answers, yes, dry_run, metric).provision()
            _render(report, output)
            if monitor and not dry_run and report.region and report.server_class:
                _monitor(client, report.region, report.server_class, DEFAULT_INTERVAL)


@app.command()
def deploy(
    dry_run: bool = DryRun,
    debug: bool = Debug,
    region: Optional[str] = RegionOpt,
    output: str = Output,
    yes: bool = Yes,
    cloudspace: Optional[str] = typer.Option(None, "--cloudspace", help="Cloudspace id to deploy onto"),
    timeout: int = Timeout,
) -> None:
    """Deploy the workload onto an existing cloudspace."""
    _configure_logging(debug)
    _check_output(output)
    with _errors("deploy"):
        settings = Settings.from_env(region=region, wait_timeout=timeout)
        session = Session.from_settings(settings)
        with SpotClient(session) as client:
            report = _orchestrator(settings, client, session, {"cloudspace": cloudspace}, yes, dry_run).deploy()
            _render(report, output)


@app.command()
def pause(
    dry_run: bool = DryRun,
    debug: bool = Debug,
    region: Optional[str] = RegionOpt,
    output: str = Output,
    yes: bool = Yes,
    timeout: int = Timeout,
) -> None:
    """Drain the workload and scale nodes to zero. Volumes are kept."""
    _configure_logging(debug)
    _check_output(output)
    with _errors("pause"):
        settings = Settings.from_env(region=region, wait_timeout=timeout)
        session = Session.from_settings(settings)
        with SpotClient(session) as client:
            report = _orchestrator(settings, client, session, {}, yes, dry_run).pause()
            _render(report, output)


@app.command()
def resume(
    dry_run: bool = DryRun,
    debug: bool = Debug,
    region: Optional[str] = RegionOpt,
    output: str = Output,
    yes: bool = Yes,
    nodes: Optional[int] = Nodes,
    raise_bid: Optional[bool] = typer.Option(
        None, "--raise-bid/--keep-bid", help="Accept or decline the suggested bid when it is below market",
    ),
    timeout: int = Timeout,
    monitor: bool = typer.Option(False, "--monitor", help="Watch the market price after resuming"),
) -> None:
    """Scale nodes back up, wait for volumes and redeploy."""
    _configure_logging(debug)
    _check_output(output)
    answers = {"nodes": nodes, "raise_bid": raise_bid}
    with _errors("resume"):
        settings = Settings.from_env(region=region, wait_timeout=timeout)
        session = Session.from_settings(settings)
        with SpotClient(session) as client:
            report = _orchestrator(settings, client, session, answers, yes, dry_run).resume()
            _render(report, output)
            if monitor and not dry_run and report.region and report.server_class:
                _monitor(client, report.region, report.server_class, DEFAULT_INTERVAL)


@app.command()
def status(
    dry_run: bool = DryRun,
    debug: bool = Debug,
    region: Optional[str] = RegionOpt,
    output: str = Output,
) -> None:
    """Read-only health checks against the API and the cluster."""
    _configure_logging(debug)
    _check_output(output)
    with _errors("status"):
        settings = Settings.from_env(region=region)
        session = Session.from_settings(settings)
        with SpotClient(session) as client:
            report = _orchestrator(settings, client, session, {}, True, dry_run).status()
    _render_status(report, output)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def prices(
    debug: bool = Debug,
    region: Optional[str] = RegionOpt,
    output: str = Output,
    metric: str = Metric,
    nodes: int = typer.Option(1, "--nodes", "-n", min=1, help="Node count for the monthly estimate"),
) -> None:
    """Show the server class catalog ranked by price per weighted resource."""
    _configure_logging(debug)
    _check_output(output)
    with _errors("prices"):
        if metric not in METRICS:
            raise ValidationError(f"Unknown metric '{metric}'. Valid options: {', '.join(METRICS)}")
        settings = Settings.from_env(region=region)
        region = settings.region or DEFAULT_REGION
        session = Session.from_settings(settings)
        with SpotClient(session) as client:
            with err_console.status(f"Fetching server classes in {region}..."):
                ranked = _orchestrator(settings, client, session, {}, True, False, metric).rank_catalog(region)

    if output == "json":
        rows = [
            {
                "code": sc.code,
                "vcpu": sc.vcpu,
                "memory_gb": sc.memory_gb,
                "gpu_count": sc.gpu_count,
                "price_per_hour": sc.price_per_hour,
                "score": sc.score,
                "monthly_cost": monthly_cost(sc.price_per_hour, nodes),
            }
            for sc in ranked
        ]
        typer.echo(json.dumps({"region": region, "metric": metric, "classes": rows}, indent=2))
        return

    table = Table(title=f"Server Classes in {region} ({metric})", show_header=True)
    table.add_column("Class", style="cyan")
    table.add_column("vCPU", justify="right")
    table.add_column("Mem GB", justify="right")
    table.add_column("GPU", justify="right")
    table.add_column("$/hr", justify="right", style="green")
    table.add_column("Score", justify="right")
    table.add_column(f"$/month x{nodes}", justify="right")
    table.add_column("", style="bold yellow")
    for i, sc in enumerate(ranked):
        marker = "<-- best value" if i == 0 else ""
        table.add_row(
            sc.code, f"{sc.vcpu:g}", f"{sc.memory_gb:g}", str(sc.gpu_count),
            f"${sc.price_per_hour:.4f}", f"{sc.score:.6f}",
            f"${monthly_cost(sc.price_per_hour, nodes):.2f}", marker,
        )
    console.print(table)
    best = ranked[0]
    console.print(
        f"Best value: [bold]{best.code}[/bold] at [green]${best.price_per_hour:.4f}/hr[/green]"
    )


@app.command()
def monitor(
    debug: bool = Debug,
    region: Optional[str] = RegionOpt,
    server_class: str = typer.Option(..., "--server-class", help="Server class code to watch"),
    interval: float = typer.Option(DEFAULT_INTERVAL, "--interval", min=1, help="Seconds between samples"),
) -> None:
    """Watch the market price of one server class until Ctrl+C."""
    _configure_logging(debug)
    with _errors("monitor"):
        settings = Settings.from_env(region=region)
        if not settings.region:
            raise ValidationError("--region is required for monitoring")
        session = Session.from_settings(settings)
        with SpotClient(session) as client:
            _monitor(client, settings.region, server_class, interval)


if __name__ == "__main__":
    app()
