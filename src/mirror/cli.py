import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from src.mirror.errors import MirrorError, RateLimitExceededError
from src.mirror.models import Resolution, ResolveStatus
from src.mirror.orchestrator import IngestionOrchestrator, build_orchestrator
from src.mirror.settings import DEFAULT_SWEEP_MAX_AGE_HOURS, load_settings

console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True, console=console)],
)

logger = logging.getLogger(__name__)

# Allow flags to be specified anywhere (before or after arguments)
CONTEXT_SETTINGS = {"allow_interspersed_args": True}
app = typer.Typer(help="Mirror images and galleries from Imgur and Postimages", context_settings=CONTEXT_SETTINGS)


# Global state for options shared by all commands
class GlobalState:
    data_dir: Optional[Path] = None


global_state = GlobalState()


@app.callback()
def main_callback(
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Mirror data directory (overrides MIRROR_DATA_DIR)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Global options for all commands."""
    global_state.data_dir = data_dir
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


def _orchestrator() -> IngestionOrchestrator:
    settings = load_settings()
    if global_state.data_dir:
        settings = settings.model_copy(update={"data_dir": global_state.data_dir})
    try:
        return build_orchestrator(settings)
    except MirrorError as e:
        console.print(f"[bold red]Error initializing mirror:[/bold red] {e}")
        raise typer.Exit(code=1)


@app.command()
def resolve(
    value: str = typer.Argument(..., help="URL, bare id or public id (e.g. postimages:gallery:abc)"),
    client_id: Optional[str] = typer.Option(None, "--client-id", help="Caller identity for rate limiting"),
):
    """
    Resolve a URL or id and mirror it if needed.
    """
    orchestrator = _orchestrator()
    try:
        if orchestrator.registry.resolve_input(value) is not None:
            resolution = orchestrator.resolve(value, client_id=client_id)
        else:
            resolution = orchestrator.resolve_public_id(value, client_id=client_id)
    except RateLimitExceededError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except MirrorError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    _print_resolution(resolution)


@app.command()
def show(local_id: str = typer.Argument(..., help="Local id (i_... or g_...)")):
    """
    Show a mirrored image or gallery, revalidating it if stale.
    """
    orchestrator = _orchestrator()
    try:
        if local_id.startswith("g_"):
            resolution = orchestrator.get_gallery(local_id)
        else:
            resolution = orchestrator.get_image(local_id)
    except MirrorError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    _print_resolution(resolution)


@app.command()
def raw(
    local_id: str = typer.Argument(..., help="Local image id (i_...)"),
    output: Path = typer.Option(..., "--output", "-o", help="File to write the bytes to"),
):
    """
    Write the mirrored bytes of an image to a file.
    """
    orchestrator = _orchestrator()
    try:
        content = orchestrator.get_raw(local_id)
    except MirrorError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if not content.found:
        console.print(f"[red]{_status_text(content.status)}: {content.message or local_id}[/red]")
        raise typer.Exit(1)

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(content.data)
    console.print(f"[green]Wrote {len(content.data)} bytes ({content.content_type}) to {output}[/green]")
    if content.degraded:
        console.print("[yellow]Origin unreachable: served from the mirror without revalidation[/yellow]")


@app.command()
def sweep(
    max_age_hours: float = typer.Option(
        DEFAULT_SWEEP_MAX_AGE_HOURS, "--max-age-hours", "-a", help="Recheck images not checked within this many hours"
    ),
):
    """
    Revalidate stale images against their origins.
    """
    orchestrator = _orchestrator()
    try:
        report = orchestrator.revalidate_stale(timedelta(hours=max_age_hours))
    except MirrorError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    table = Table(title="Sweep Report")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Checked", str(report.checked))
    table.add_row("Refreshed", str(report.refreshed))
    table.add_row("Tombstoned", str(report.tombstoned))
    table.add_row("Unavailable", str(report.unavailable))

    console.print(table)


@app.command()
def providers():
    """
    List registered hosts in match order.
    """
    registry = _orchestrator().registry

    table = Table(title="Providers")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Stale After")
    table.add_column("Rate Limit")

    for adapter in registry.adapters:
        limit = registry.get_rate_limit(adapter)
        name = f"{adapter.name} (default)" if adapter is registry.default_adapter else adapter.name
        table.add_row(
            adapter.id,
            name,
            str(adapter.config.stale_after),
            f"{limit.max_requests} / {limit.window_ms // 1000}s",
        )

    console.print(table)


def _status_text(status: ResolveStatus) -> str:
    return {
        ResolveStatus.OK: "OK",
        ResolveStatus.NOT_FOUND: "Not found",
        ResolveStatus.UPSTREAM_UNAVAILABLE: "Upstream unavailable",
    }[status]


def _print_resolution(resolution: Resolution):
    if not resolution.found:
        console.print(f"[red]{_status_text(resolution.status)}: {resolution.message or ''}[/red]")
        raise typer.Exit(1)

    table = Table(title="Gallery" if resolution.gallery else "Image")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="magenta")

    if resolution.parsed:
        table.add_row("Public Id", resolution.parsed.public_id)
        table.add_row("Provider", resolution.parsed.provider_id)
    if resolution.gallery:
        table.add_row("Gallery Id", resolution.gallery.local_id)
        table.add_row("Title", resolution.gallery.title or "-")
        table.add_row("Images", str(resolution.gallery.image_count))
    table.add_row("From Cache", "yes" if resolution.from_cache else "no")
    if resolution.degraded:
        table.add_row("Degraded", "[yellow]origin unreachable[/yellow]")

    console.print(table)

    images_table = Table(title="Images", show_header=True)
    images_table.add_column("#")
    images_table.add_column("Local Id")
    images_table.add_column("Type")
    images_table.add_column("Title")
    images_table.add_column("Bytes")

    missing = set(resolution.missing_positions)
    for position, image in zip(resolution.image_positions, resolution.images):
        bytes_str = "[red]missing[/red]" if position in missing else "[green]stored[/green]"
        images_table.add_row(str(position), image.local_id, image.mime_type, image.title or "-", bytes_str)

    console.print(images_table)


if __name__ == "__main__":
    app()
