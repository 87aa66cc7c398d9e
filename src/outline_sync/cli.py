"""CLI interface for the directory to Outline sync."""

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import AppConfig, ConfigError, load_config
from .logging_utils import setup_logging
from .sync import PHASE_ORDER, SyncRunner
from .sync.orchestrator import EXIT_CONFIG_ERROR, RunResult

app = typer.Typer(
    name="outline-sync",
    help="Reconcile an Outline workspace with the organizational directory",
    no_args_is_help=True,
)
console = Console()

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config file"),
]


def get_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from file and environment."""
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Error loading config: {escape(str(e))}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR) from None


def _secrets(config: AppConfig) -> list[str]:
    return [config.outline.api_token, config.directory.password]


def _mask(secret: str) -> str:
    return f"{secret[:4]}..." if secret else "[red]Not set[/red]"


def _display_result(result: RunResult) -> None:
    table = Table(title="Sync Summary")
    table.add_column("Phase", style="cyan")
    table.add_column("Status")
    table.add_column("Changes")
    table.add_column("Errors", justify="right")
    table.add_column("Warnings", justify="right")
    table.add_column("Time", justify="right")

    for phase in result.phases:
        if phase.aborted:
            status = "[red]✗ Aborted[/red]"
        elif phase.errors:
            status = "[yellow]⚠ Partial[/yellow]"
        else:
            status = "[green]✓ OK[/green]"
        changes = ", ".join(f"{k.replace('_', ' ')}: {v}" for k, v in phase.counters().items())
        table.add_row(
            phase.phase,
            status,
            changes or "[dim]up to date[/dim]",
            str(len(phase.errors)),
            str(len(phase.warnings)),
            f"{phase.duration_seconds:.1f}s",
        )

    console.print(table)

    for phase in result.phases:
        for error in phase.errors[:10]:
            console.print(f"  [red]•[/red] {escape(f'[{phase.phase}] {error}')}")
        if len(phase.errors) > 10:
            console.print(f"  [dim]... and {len(phase.errors) - 10} more[/dim]")


@app.command()
def sync(
    phase: Annotated[
        list[str] | None,
        typer.Option(
            "--phase",
            "-p",
            help=f"Phase to run, repeatable ({', '.join(PHASE_ORDER)}); default all",
        ),
    ] = None,
    config_path: ConfigOption = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
    json_logs: Annotated[
        bool,
        typer.Option("--json-logs", help="Emit structured JSON log lines"),
    ] = False,
) -> None:
    """Run one reconciliation pass."""
    config = get_config(config_path)
    run_id = setup_logging(verbose=verbose, json_logs=json_logs, secrets=_secrets(config))

    console.print(f"[bold]Starting sync[/bold] [dim](run {run_id})[/dim]\n")
    runner = SyncRunner(config)
    try:
        result = runner.run(phase)
    finally:
        runner.close()

    if result.config_error:
        console.print(f"[red]Configuration error: {escape(result.config_error)}[/red]")
        raise typer.Exit(result.exit_code)

    _display_result(result)
    if result.success:
        console.print(f"\n[green]✓ Sync completed ({result.mutations} change(s))[/green]")
    else:
        console.print("\n[yellow]Sync completed with errors[/yellow]")
    raise typer.Exit(result.exit_code)


@app.command()
def verify(config_path: ConfigOption = None) -> None:
    """Verify connections to the Outline and directory APIs."""
    config = get_config(config_path)
    setup_logging(secrets=_secrets(config))
    runner = SyncRunner(config)

    console.print("[bold]Verifying API connections...[/bold]\n")
    try:
        results = runner.verify_connections()
    finally:
        runner.close()

    table = Table(title="Connection Status")
    table.add_column("Service", style="cyan")
    table.add_column("Status", style="green")

    for service, connected in results.items():
        status = "[green]✓ Connected[/green]" if connected else "[red]✗ Failed[/red]"
        table.add_row(service.title(), status)

    console.print(table)

    if not all(results.values()):
        raise typer.Exit(1)


@app.command()
def config_show(config_path: ConfigOption = None) -> None:
    """Show current configuration (with secrets masked)."""
    config = get_config(config_path)
    settings = config.sync

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Outline URL", config.outline.base_url)
    table.add_row("Outline Token", _mask(config.outline.api_token))
    table.add_row("Service Admin", config.outline.admin_email)
    table.add_row("Directory URL", config.directory.url)
    table.add_row("Directory User", config.directory.username)
    table.add_row("Directory Password", _mask(config.directory.password))
    table.add_row("Directory Admin Group", settings.directory_admin_group)
    table.add_row("Outline Admin Group", settings.admin_group_name)
    table.add_row("Allowed Collections", ", ".join(settings.allowed_collections) or "[dim]none[/dim]")
    table.add_row(
        "Allowed Units File",
        str(settings.allowed_units_file) if settings.allowed_units_file else "[dim]all units[/dim]",
    )
    table.add_row("Authorization Right", settings.authorization_right_id or "[dim]Not set[/dim]")
    table.add_row("Access Group", settings.access_group or "[dim]Not set[/dim]")

    console.print(table)


if __name__ == "__main__":
    app()
