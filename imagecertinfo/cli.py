"""CLI entry-point for imagecertinfo."""

from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from imagecertinfo import __version__
from imagecertinfo.config import DEFAULT_OUTPUT_DIR, Settings
from imagecertinfo.errors import InventoryError, MalformedReference, WorkloadReadError
from imagecertinfo.manager import InventoryEngine
from imagecertinfo.models import CertificationStatus, InventorySummary
from imagecertinfo.reference import classify_registry, parse_image_id
from imagecertinfo.renderer import write_report

console = Console()

_STATUS_STYLE = {
    CertificationStatus.CERTIFIED: "[green]Certified[/green]",
    CertificationStatus.NOT_CERTIFIED: "[yellow]NotCertified[/yellow]",
    CertificationStatus.PENDING: "[cyan]Pending[/cyan]",
    CertificationStatus.UNKNOWN: "[dim]Unknown[/dim]",
    CertificationStatus.ERROR: "[red]Error[/red]",
}


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load_settings(ctx: click.Context) -> Settings:
    opts = ctx.obj
    overrides = {
        "kubeconfig": opts["kubeconfig"],
        "kube_context": opts["kube_context"],
        "store": opts["store"],
        "sqlite_path": opts["sqlite_path"],
    }
    if opts["verbose"]:
        overrides["verbose"] = True
    try:
        if opts["config_file"]:
            return Settings.from_file(opts["config_file"], **overrides)
        return Settings(**{k: v for k, v in overrides.items() if v not in (None, "")})
    except (ValidationError, ValueError, OSError) as exc:
        console.print(f"[red bold]Error:[/red bold] invalid configuration: {exc}")
        sys.exit(1)


def _engine(ctx: click.Context) -> InventoryEngine:
    settings = _load_settings(ctx)
    _configure_logging(settings.verbose)
    return InventoryEngine(settings)


@click.group()
@click.version_option(version=__version__, prog_name="imagecertinfo")
@click.option("--config", "config_file", default="", help="YAML settings file.")
@click.option("--kubeconfig", default="", help="Path to kubeconfig file (default: ~/.kube/config).")
@click.option("--context", "kube_context", default="", help="Kubernetes context to use.")
@click.option(
    "--store",
    type=click.Choice(["kubectl", "sqlite"]),
    default=None,
    help="Record store: cluster custom resources (kubectl) or a local SQLite file.",
)
@click.option("--sqlite-path", default="", help="SQLite database path (with --store sqlite).")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(
    ctx: click.Context,
    config_file: str,
    kubeconfig: str,
    kube_context: str,
    store: str | None,
    sqlite_path: str,
    verbose: bool,
) -> None:
    """Image certification inventory for Kubernetes clusters."""
    ctx.obj = {
        "config_file": config_file,
        "kubeconfig": kubeconfig,
        "kube_context": kube_context,
        "store": store,
        "sqlite_path": sqlite_path,
        "verbose": verbose,
    }


@main.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the inventory engine until interrupted."""
    engine = _engine(ctx)

    def _handle_signal(signum, frame) -> None:
        engine.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    console.print(Panel(f"imagecertinfo {__version__}: watching cluster workloads", style="bold cyan"))
    engine.start()
    while not engine.wait(timeout=1.0):
        pass
    console.print("[green bold]Stopped.[/green bold]")


@main.command()
@click.argument("namespace")
@click.argument("pod")
@click.pass_context
def reconcile(ctx: click.Context, namespace: str, pod: str) -> None:
    """Reconcile a single pod and wait for its enrichments."""
    engine = _engine(ctx)
    try:
        result = engine.reconciler.reconcile(namespace, pod)
        engine.reconciler.wait_for_enrichment()
    except WorkloadReadError as exc:
        console.print(f"[red bold]Error:[/red bold] {exc}")
        sys.exit(1)
    finally:
        engine.reconciler.shutdown(wait=True)

    if result.skipped:
        console.print(f"[yellow]Pod {namespace}/{pod} skipped (gone or not active).[/yellow]")
        return
    for key in result.created:
        record = engine.store.get(key)
        status = record.status.certification_status if record else CertificationStatus.UNKNOWN
        console.print(f"  [green]+[/green] {key}  {_STATUS_STYLE[status]}")
    for key in result.updated:
        console.print(f"  [cyan]~[/cyan] {key}")
    for err in result.errors:
        console.print(f"  [red]![/red] {err}")
    if result.errors:
        sys.exit(1)


@main.command()
@click.argument("image_id")
def parse(image_id: str) -> None:
    """Parse a container IMAGE_ID and print its record key."""
    try:
        ref = parse_image_id(image_id)
    except MalformedReference as exc:
        console.print(f"[red bold]Error:[/red bold] {exc}")
        sys.exit(1)

    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Registry", ref.registry)
    table.add_row("Repository", ref.repository)
    table.add_row("Tag", ref.tag or "-")
    table.add_row("Digest", ref.digest)
    table.add_row("Full reference", ref.full_reference)
    table.add_row("Record key", ref.key)
    table.add_row("Registry type", classify_registry(ref.registry).value)
    console.print(table)


@main.command(name="list")
@click.pass_context
def list_records(ctx: click.Context) -> None:
    """List inventory records."""
    settings = _load_settings(ctx)
    _configure_logging(settings.verbose)
    engine = InventoryEngine(settings, sources=[])
    try:
        records = engine.store.list()
    except InventoryError as exc:
        console.print(f"[red bold]Error:[/red bold] {exc}")
        sys.exit(1)

    if not records:
        console.print("[yellow]No image records found.[/yellow]")
        return

    table = Table(title="Image Certification Inventory", show_lines=False)
    table.add_column("Record", style="bold")
    table.add_column("Registry type")
    table.add_column("Status")
    table.add_column("Health")
    table.add_column("Vulns (C/I)")
    table.add_column("EOL (days)")
    table.add_column("Workloads", justify="right")
    for rec in records:
        st = rec.status
        data = st.enrichment
        vulns = ""
        if data and data.vulnerabilities:
            vulns = f"{data.vulnerabilities.critical}/{data.vulnerabilities.important}"
        table.add_row(
            rec.name,
            st.registry_type.value,
            _STATUS_STYLE[st.certification_status],
            data.health_index if data else "",
            vulns,
            "" if st.days_until_eol is None else str(st.days_until_eol),
            str(len(st.workload_references)),
        )
    console.print(table)

    summary = InventorySummary.from_records(records)
    parts = [f"{status}: {count}" for status, count in sorted(summary.by_status.items())]
    console.print(f"\n  Total: [bold]{summary.total}[/bold]  " + "  ".join(parts))


@main.command()
@click.pass_context
def refresh(ctx: click.Context) -> None:
    """Run one certification refresh cycle now."""
    engine = _engine(ctx)
    try:
        summary = engine.refresher.refresh()
    except InventoryError as exc:
        console.print(f"[red bold]Error:[/red bold] {exc}")
        sys.exit(1)
    finally:
        engine.reconciler.shutdown(wait=True)

    console.print(
        f"  Checked: [bold]{summary.checked}[/bold]  "
        f"Refreshed: [green]{summary.refreshed}[/green]  "
        f"Skipped: [dim]{summary.skipped}[/dim]  "
        f"Failed: [red]{summary.failed}[/red]  "
        f"Status changes: [cyan]{summary.status_changes}[/cyan]"
    )
    for key in summary.degraded:
        console.print(f"  [yellow]Health degraded:[/yellow] {key}")
    for key in summary.eol_approaching:
        console.print(f"  [yellow]EOL approaching:[/yellow] {key}")


@main.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Remove workload references to pods that no longer exist."""
    settings = _load_settings(ctx)
    _configure_logging(settings.verbose)
    engine = InventoryEngine(settings, sources=[])
    try:
        pruned = engine.sweeper.sweep()
    except InventoryError as exc:
        console.print(f"[red bold]Error:[/red bold] {exc}")
        sys.exit(1)
    console.print(f"  Pruned [green]{pruned}[/green] stale reference(s).")


@main.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Probe each enabled certification provider."""
    engine = _engine(ctx)
    if not engine.sources:
        console.print("[yellow]No certification providers enabled.[/yellow]")
        return
    failed = False
    for source in engine.sources:
        if source.client.healthy():
            console.print(f"  [green]✓[/green] {source.name}")
        else:
            failed = True
            console.print(f"  [red]✗[/red] {source.name}")
    if failed:
        sys.exit(1)


@main.command()
@click.option("--output", "-o", "output_dir", default=DEFAULT_OUTPUT_DIR, help="Output directory.")
@click.option(
    "--format", "output_format", type=click.Choice(["yaml", "json"]), default="yaml", help="Data file format."
)
@click.pass_context
def report(ctx: click.Context, output_dir: str, output_format: str) -> None:
    """Write a Markdown inventory report plus a data file."""
    settings = _load_settings(ctx)
    _configure_logging(settings.verbose)
    engine = InventoryEngine(settings, sources=[])
    try:
        records = engine.store.list()
    except InventoryError as exc:
        console.print(f"[red bold]Error:[/red bold] {exc}")
        sys.exit(1)

    written = write_report(records, Path(output_dir).resolve(), output_format)
    console.print("[green bold]Done![/green bold] Files written:")
    for f in written:
        console.print(f"  • {f}")


if __name__ == "__main__":
    main()
