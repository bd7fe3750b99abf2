"""Command-line entry point: ``vmprov apply|destroy|status|capture|validate``."""

import logging
import threading
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import TypeAdapter
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from provisioner.clients.hypervisor import HypervisorClient, PrlctlClient
from provisioner.clients.report import StatusReporter
from provisioner.config import Settings, get_settings
from provisioner.errors import ProvisionerError, ReportError, ValidationError
from provisioner.logging_config import configure_logging
from provisioner.metrics import RunMetrics
from provisioner.models import CaptureStep, VMSpec
from provisioner.schemas import InstanceInfo, RunSummary
from provisioner.services.capture import CaptureService
from provisioner.services.info import collect_info
from provisioner.services.normalizer import normalize_file
from provisioner.services.orchestrator import Orchestrator, install_signal_handlers


app = typer.Typer(
    name="vmprov",
    help="Declarative Parallels Desktop VM provisioning",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)

_INFO_LIST = TypeAdapter(list[InstanceInfo])


def build_client(settings: Settings, metrics: RunMetrics | None = None, fake: bool = False) -> HypervisorClient:
    if fake or settings.hypervisor_backend == "fake":
        from fake_hypervisor.client import FakeHypervisor
        from fake_hypervisor.config import get_settings as get_fake_settings

        return FakeHypervisor(get_fake_settings(), metrics=metrics)
    return PrlctlClient(
        binary=settings.prlctl_binary,
        timeout_sec=settings.command_timeout_sec,
        metrics=metrics,
    )


def _load_specs(file: Path, settings: Settings) -> list[VMSpec]:
    try:
        return normalize_file(file, settings)
    except ValidationError as exc:
        console.print(f"[red]✗[/red] {escape(str(exc))}")
        raise typer.Exit(2)


def _login_command(settings: Settings, info: InstanceInfo | None) -> str:
    if info is None or not info.ip_address:
        return "-"
    return f"ssh {settings.login_user}@{info.ip_address}"


def print_summary(summary: RunSummary, settings: Settings) -> None:
    table = Table(title="Provisioning summary")
    table.add_column("VM")
    table.add_column("State")
    table.add_column("IP Address")
    table.add_column("Login")
    table.add_column("Reason", overflow="fold")
    for result in summary.results:
        style = "green" if result.succeeded else "red"
        table.add_row(
            result.name,
            f"[{style}]{result.state}[/{style}]",
            (result.info.ip_address if result.info else None) or "-",
            _login_command(settings, result.info),
            escape(result.reason or ""),
        )
    console.print(table)
    ready = sum(1 for r in summary.results if r.succeeded)
    failed = len(summary.results) - ready
    console.print(f"ready={ready} failed={failed} elapsed={summary.elapsed_sec:.1f}s")


def print_infos(infos: list[InstanceInfo], settings: Settings) -> None:
    table = Table(title="VM status")
    for column in ("VM", "Status", "IP Address", "UUID", "CPUs", "Memory MB", "Disk GB", "Login"):
        table.add_column(column)
    for info in infos:
        table.add_row(
            info.name,
            info.status,
            info.ip_address or "-",
            info.uuid or "-",
            str(info.cpus or "-"),
            str(info.memory_mb or "-"),
            str(info.disk_gb or "-"),
            _login_command(settings, info),
        )
    console.print(table)


def publish_summary(summary: RunSummary, settings: Settings) -> None:
    if not settings.report_url:
        return
    reporter = StatusReporter(
        settings.report_url,
        attempts=settings.report_retry_attempts,
        sleep_sec=settings.report_retry_sleep_sec,
    )
    try:
        reporter.publish(summary)
    except ReportError as exc:
        logger.warning("%s", exc)
    finally:
        reporter.close()


@app.command()
def apply(
    file: Path = typer.Option(..., "--file", "-f", help="VM declarations (YAML)"),
    workers: Optional[int] = typer.Option(None, min=1, help="Concurrent provisioning limit"),
    timeout: Optional[float] = typer.Option(None, min=1, help="Readiness timeout in seconds"),
    json_output: bool = typer.Option(False, "--json", help="Print the run summary as JSON"),
    fake: bool = typer.Option(False, help="Use the in-memory hypervisor"),
) -> None:
    """Create (or replace) every declared VM and wait until each is ready."""
    settings = get_settings()
    if timeout is not None:
        settings = settings.model_copy(update={"ready_timeout_sec": timeout})
    configure_logging(settings.log_level)
    specs = _load_specs(file, settings)

    metrics = RunMetrics()
    stop_event = threading.Event()
    restore = install_signal_handlers(stop_event)
    try:
        orchestrator = Orchestrator(
            build_client(settings, metrics, fake),
            settings,
            stop_event=stop_event,
            metrics=metrics,
        )
        summary = orchestrator.apply(specs, max_workers=workers)
    finally:
        restore()

    if json_output:
        typer.echo(summary.model_dump_json(indent=2))
    else:
        print_summary(summary, settings)
    publish_summary(summary, settings)
    if not summary.succeeded:
        raise typer.Exit(1)


@app.command()
def destroy(
    names: Optional[List[str]] = typer.Argument(None, help="VM names to destroy"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Destroy every VM declared here"),
    fake: bool = typer.Option(False, help="Use the in-memory hypervisor"),
) -> None:
    """Stop and delete VMs. Missing VMs are not an error."""
    settings = get_settings()
    configure_logging(settings.log_level)
    targets = list(names or [])
    if file is not None:
        targets.extend(spec.name for spec in _load_specs(file, settings) if spec.name not in targets)
    if not targets:
        console.print("[yellow]nothing to destroy[/yellow]")
        raise typer.Exit(2)

    orchestrator = Orchestrator(build_client(settings, fake=fake), settings)
    results = orchestrator.destroy(targets)
    for result in results:
        if result.succeeded:
            console.print(f"[green]✓[/green] {result.name} destroyed")
        else:
            console.print(f"[red]✗[/red] {result.name}: {escape(result.reason or '')}")
    if not all(r.succeeded for r in results):
        raise typer.Exit(1)


@app.command()
def status(
    names: Optional[List[str]] = typer.Argument(None, help="VM names (default: all)"),
    json_output: bool = typer.Option(False, "--json", help="Print records as JSON"),
    fake: bool = typer.Option(False, help="Use the in-memory hypervisor"),
) -> None:
    """Show name, status, address and hardware without waiting."""
    settings = get_settings()
    configure_logging(settings.log_level)
    client = build_client(settings, fake=fake)
    try:
        targets = list(names or []) or [listing.name for listing in client.list_vms()]
        infos = [collect_info(client, name) for name in targets]
    except ProvisionerError as exc:
        console.print(f"[red]✗[/red] {escape(str(exc))}")
        raise typer.Exit(1)
    if json_output:
        typer.echo(_INFO_LIST.dump_json(infos).decode())
    else:
        print_infos(infos, settings)


@app.command()
def capture(
    name: str = typer.Argument(..., help="VM to capture"),
    step: List[CaptureStep] = typer.Option(..., "--step", "-s", help="template, export or snapshot; repeat in order"),
    fake: bool = typer.Option(False, help="Use the in-memory hypervisor"),
) -> None:
    """Convert a VM into a template, an exported bundle and/or a snapshot."""
    settings = get_settings()
    configure_logging(settings.log_level)
    try:
        report = CaptureService(build_client(settings, fake=fake), settings).capture(name, list(step))
    except ProvisionerError as exc:
        console.print(f"[red]✗[/red] {escape(str(exc))}")
        raise typer.Exit(1)
    for result in report.steps:
        if result.succeeded:
            console.print(f"[green]✓[/green] {result.step}: {result.artifact}")
        else:
            console.print(f"[red]✗[/red] {result.step}: {escape(result.detail or '')}")
    if not report.succeeded:
        raise typer.Exit(1)


@app.command()
def validate(
    file: Path = typer.Option(..., "--file", "-f", help="VM declarations (YAML)"),
) -> None:
    """Resolve declarations into the provisioning plan without touching the hypervisor."""
    settings = get_settings()
    specs = _load_specs(file, settings)
    table = Table(title="Provisioning plan")
    for column in ("#", "VM", "Source", "Reference", "CPUs", "Memory MB", "Disk GB", "Network", "After"):
        table.add_column(column)
    for idx, spec in enumerate(specs, start=1):
        source = spec.source_type.value
        if spec.linked_clone:
            source += " (linked)"
        table.add_row(
            str(idx),
            spec.name,
            source,
            spec.source_ref,
            str(spec.cpus),
            str(spec.memory_mb),
            str(spec.disk_gb) if spec.source_type.value == "iso" else "-",
            spec.network.value,
            ", ".join(sorted(spec.start_after)) or "-",
        )
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
