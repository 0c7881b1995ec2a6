"""featuregraph CLI for creating an entity store and running derived-edge stages."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..config import Settings, load_settings
from ..db.cache import EntityCache
from ..db.connection import get_connection
from ..db.schema import SchemaError, get_metadata
from ..db.store import EntityStore
from ..models.metadata import Model
from ..models.records import StageReport
from ..postprocess.references import ReferenceMaterializer, StageFailed

console = Console()
app = typer.Typer(add_completion=False, no_args_is_help=True)


def _resolve_settings(
    config_path: Optional[Path],
    db: Optional[Path],
) -> Settings:
    settings = load_settings(config_path)
    if db:
        settings.db_path = Path(db).expanduser().resolve()
    return settings


def _configure_logging(settings: Settings, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _report_table(reports: List[StageReport], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Stage", style="cyan")
    table.add_column("Entities written", justify="right")
    table.add_column("Edges created", justify="right")
    table.add_column("Skipped", justify="right")
    for report in reports:
        table.add_row(
            report.stage,
            str(report.entities_written),
            str(report.edges_created),
            str(len(report.skipped)),
        )
    return table


def _print_skipped(reports: List[StageReport]) -> None:
    for report in reports:
        for diagnostic in report.skipped:
            console.print(f"  [yellow]{report.stage}[/yellow]: {diagnostic}")


@app.command()
def init(
    db: Optional[Path] = typer.Option(None, "--db", help="Path to entity store database"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Create an empty entity store."""
    settings = _resolve_settings(config, db)
    with get_connection(settings.db_path, create=True):
        pass
    console.print(f"[green]Entity store ready:[/green] {settings.db_path}")


@app.command()
def status(
    db: Optional[Path] = typer.Option(None, "--db", help="Path to entity store database"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Show entity counts per type."""
    settings = _resolve_settings(config, db)

    if not settings.db_path.exists():
        console.print(f"[red]Database not found:[/red] {settings.db_path}")
        raise typer.Exit(1)

    with get_connection(settings.db_path, read_only=True) as conn:
        store = EntityStore(conn, Model.from_config(settings.model))
        version = get_metadata(conn, "version") or "unknown"
        counts = store.counts_by_type()

    table = Table(title="Entity Store")
    table.add_column("Type", style="cyan")
    table.add_column("Entities", justify="right")
    for type_name, count in counts.items():
        table.add_row(type_name, str(count))
    table.add_row("[bold]Total[/bold]", str(sum(counts.values())))

    console.print(f"Database: {settings.db_path} (schema version {version})")
    console.print(table)


@app.command()
def stages(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """List configured stages in execution order."""
    settings = _resolve_settings(config, None)

    if not settings.stages:
        console.print("[yellow]No stages configured[/yellow]")
        return

    table = Table(title="Derived-edge stages")
    table.add_column("#", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Description")
    for index, spec in enumerate(settings.specs(), start=1):
        table.add_row(str(index), spec.name, spec.describe().split(": ", 1)[1])
    console.print(table)


@app.command()
def materialize(
    stage: Optional[List[str]] = typer.Option(
        None, "--stage", "-s", help="Only run the named stage(s), in configured order"
    ),
    db: Optional[Path] = typer.Option(None, "--db", help="Path to entity store database"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Rows per fetch"),
    no_analyse: bool = typer.Option(False, "--no-analyse", help="Skip statistics refresh"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run derived-edge stages against the entity store."""
    settings = _resolve_settings(config, db)
    _configure_logging(settings, verbose)

    if not settings.db_path.exists():
        console.print(f"[red]Database not found:[/red] {settings.db_path}")
        raise typer.Exit(1)

    try:
        specs = settings.specs(stage)
        model = Model.from_config(settings.model)
    except (KeyError, SchemaError) as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(1)

    with get_connection(settings.db_path) as conn:
        materializer = ReferenceMaterializer(
            EntityStore(conn, model, EntityCache(max_entries=settings.cache_size)),
            batch_size=batch_size or settings.batch_size,
            refresh_statistics=settings.refresh_statistics and not no_analyse,
        )
        try:
            reports = materializer.run_stages(specs)
        except StageFailed as exc:
            if exc.completed:
                console.print(_report_table(exc.completed, "Committed stages"))
                _print_skipped(exc.completed)
            console.print(f"[red]Stage {exc.stage} failed:[/red] {exc.cause}")
            skipped = [s.name for s in specs[len(exc.completed) + 1:]]
            if skipped:
                console.print(f"[dim]Not run: {', '.join(skipped)}[/dim]")
            raise typer.Exit(1)

    console.print(_report_table(reports, "Materialized stages"))
    _print_skipped(reports)
