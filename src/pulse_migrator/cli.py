"""
Pulse Migrator Command Line Interface

Main entry point for the pulse-migrator CLI.
"""

import sys
from pathlib import Path
from typing import Callable, Optional

import click
from rich.console import Console
from rich.markup import escape

from pulse_migrator.exceptions import MigratorError, get_error_code

console = Console()

EXIT_FAILED = 16
EXIT_CANCELLED = 130


def _app_root(ctx: click.Context) -> Path:
    from pulse_migrator.paths import get_app_root
    return get_app_root(ctx.obj.get("home"))


def _build_orchestrator(ctx: click.Context):
    from pulse_migrator.logging_config import setup_logging, get_log_path
    from pulse_migrator.orchestrator import MigrationOrchestrator
    from pulse_migrator.paths import ensure_directories, get_logs_dir

    root = _app_root(ctx)
    ensure_directories(root)
    setup_logging(log_file=get_log_path(get_logs_dir(root)), quiet=not ctx.obj.get("verbose"))
    return MigrationOrchestrator.create(root)


def _fail(error: Exception):
    console.print(f"[red]Error:[/red] {escape(str(error))}", highlight=False)
    sys.exit(get_error_code(error))


def _run_and_wait(ctx: click.Context, start: Callable) -> int:
    """Start an operation, stream its events, and return the exit code."""
    from pulse_migrator.models import RunStatus
    from pulse_migrator.ui import EventPrinter, MigratorUI

    try:
        orchestrator = _build_orchestrator(ctx)
    except MigratorError as e:
        _fail(e)

    handle = orchestrator.bus.subscribe(EventPrinter(console, show_debug=ctx.obj.get("verbose", False)))
    try:
        try:
            start(orchestrator)
        except MigratorError as e:
            _fail(e)

        try:
            run = orchestrator.wait()
        except KeyboardInterrupt:
            console.print()
            console.print("[yellow]Interrupted. Cancelling current operation...[/yellow]")
            orchestrator.cancel_current_operation()
            run = orchestrator.wait()
    finally:
        orchestrator.bus.unsubscribe(handle)
        orchestrator.shutdown()

    ui = MigratorUI(console)
    console.print()
    if run.stages:
        from pulse_migrator.ui import StageBoard
        board = StageBoard()
        for stage in run.stages:
            board.stages[stage.name]["status"] = stage.status
        console.print(board.render())
    if run.artifact_dir:
        console.print(f"[dim]Backup directory: {run.artifact_dir}[/dim]")

    if run.overall_status == RunStatus.COMPLETED:
        ui.print_success(f"{run.kind.value.lower()} completed")
        return 0
    if run.overall_status == RunStatus.CANCELLED:
        ui.print_warning(f"{run.kind.value.lower()} cancelled")
        return EXIT_CANCELLED
    ui.print_error(f"{run.kind.value.lower()} failed: {escape(run.error or '')}")
    return EXIT_FAILED


@click.group()
@click.version_option(package_name="pulse-migrator")
@click.option("--home", type=click.Path(), envvar="PULSE_HOME", help="Application root (default: ~/.pulse-migrator)")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
@click.pass_context
def main(ctx: click.Context, home: Optional[str], verbose: bool):
    """Pulse Migrator: back up hosted database projects"""
    ctx.ensure_object(dict)
    ctx.obj["home"] = Path(home) if home else None
    ctx.obj["verbose"] = verbose


@main.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the application directories and a default config.yaml."""
    from pulse_migrator.config import MigratorConfig, save_config
    from pulse_migrator.paths import ensure_directories, get_config_path
    from pulse_migrator.ui import MigratorUI

    ui = MigratorUI(console)
    ui.print_header("Pulse Migrator setup")
    root = _app_root(ctx)
    created = ensure_directories(root)
    for directory in created:
        ui.print_success(f"Created {directory}")

    config_path = get_config_path(root)
    if config_path.exists():
        ui.print_info(f"Keeping existing {config_path}")
    else:
        save_config(root, MigratorConfig())
        ui.print_success(f"Wrote {config_path}")

    ui.print_info(f"Application root: {root}")


@main.group()
def drivers():
    """Database driver commands."""
    pass


@drivers.command("status")
@click.pass_context
def drivers_status(ctx: click.Context):
    """Check whether pg_dump/psql are installed."""
    from pulse_migrator.models import DriverStatus
    from pulse_migrator.ui import EventPrinter

    try:
        orchestrator = _build_orchestrator(ctx)
    except MigratorError as e:
        _fail(e)

    handle = orchestrator.bus.subscribe(EventPrinter(console))
    try:
        status = orchestrator.check_driver_status()
    finally:
        orchestrator.bus.unsubscribe(handle)

    state = orchestrator.driver_manager.state
    if state.installed:
        console.print(f"[dim]Version: {state.version}  Path: {state.install_path}[/dim]")
    sys.exit(0 if status == DriverStatus.READY else 1)


@drivers.command("install")
@click.pass_context
def drivers_install(ctx: click.Context):
    """Download and install the driver bundle."""
    sys.exit(_run_and_wait(ctx, lambda o: o.install_drivers()))


@main.command()
@click.option("--url", required=True, help="Project URL (https://<ref>.supabase.co)")
@click.option("--key", required=True, envvar="PULSE_SOURCE_KEY", help="Service role key")
@click.option("--timeout", type=float, default=None, help="Probe timeout in seconds")
@click.pass_context
def verify(ctx: click.Context, url: str, key: str, timeout: Optional[float]):
    """Check that a project is reachable and the key is authorized."""
    from pulse_migrator.config import load_config
    from pulse_migrator.ui import MigratorUI
    from pulse_migrator.verifier import ConnectionVerifier

    ui = MigratorUI(console)
    try:
        config = load_config(_app_root(ctx))
        message = ConnectionVerifier(timeout=config.verify_timeout).verify(url, key, timeout)
    except MigratorError as e:
        _fail(e)
    ui.print_success(message)


def _profile_url(ctx: click.Context, profile: Optional[str], url: Optional[str], key: str = "url") -> Optional[str]:
    if url or not profile:
        return url
    from pulse_migrator.config import get_profile

    found = get_profile(_app_root(ctx), profile)
    if not found:
        console.print(f"[red]Profile '{profile}' not found.[/red]")
        sys.exit(10)
    return found.get(key)


@main.command()
@click.option("--url", help="Source project URL")
@click.option("--key", envvar="PULSE_SOURCE_KEY", help="Source service role key")
@click.option("--db-url", envvar="PULSE_SOURCE_DB_URL", help="Source Postgres connection string")
@click.option("--profile", help="Use a saved profile for the URLs")
@click.option("--out", type=click.Path(), help="Backup directory (default: userdata/backups/<timestamp>)")
@click.option("--functions-source", type=click.Path(exists=True, file_okay=False), help="Local functions source to archive")
@click.pass_context
def backup(ctx, url, key, db_url, profile, out, functions_source):
    """Back up database, storage, functions and auth of a project."""
    from pulse_migrator.models import OperationConfig, RunKind

    config = OperationConfig(
        kind=RunKind.BACKUP,
        source_url=_profile_url(ctx, profile, url) or "",
        source_key=key or "",
        database_url=_profile_url(ctx, profile, db_url, "database_url") or "",
        output_dir=Path(out) if out else None,
        functions_source=Path(functions_source) if functions_source else None,
    )
    sys.exit(_run_and_wait(ctx, lambda o: o.start_backup(config)))


@main.command()
@click.option("--url", help="Target project URL")
@click.option("--key", envvar="PULSE_TARGET_KEY", help="Target service role key")
@click.option("--profile", help="Use a saved profile for the URL")
@click.option("--artifact", type=click.Path(), help="Backup directory to restore")
@click.pass_context
def restore(ctx, url, key, profile, artifact):
    """Restore a backup into a project (not available yet)."""
    from pulse_migrator.models import OperationConfig, RunKind

    config = OperationConfig(
        kind=RunKind.RESTORE,
        target_url=_profile_url(ctx, profile, url) or "",
        target_key=key or "",
        artifact_path=Path(artifact) if artifact else None,
    )
    sys.exit(_run_and_wait(ctx, lambda o: o.start_restore(config)))


@main.group()
def config():
    """Configuration management commands."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context):
    """Show current configuration."""
    from pulse_migrator.config import load_config
    from pulse_migrator.paths import get_config_path
    from pulse_migrator.ui import MigratorUI

    root = _app_root(ctx)
    try:
        settings = load_config(root)
    except MigratorError as e:
        _fail(e)

    source = get_config_path(root)
    title = f"Configuration ({source})" if source.exists() else "Configuration (defaults)"
    MigratorUI(console).show_summary_table(title, {k: str(v) for k, v in settings.to_dict().items()})


@config.command("env")
def config_env():
    """Show recognised environment variables."""
    import os

    from rich.table import Table

    from pulse_migrator.logging_config import ENV_VARS
    from pulse_migrator.ui import is_secret_key

    table = Table(title="Environment", border_style="blue")
    table.add_column("Variable", style="cyan")
    table.add_column("Description")
    table.add_column("Current", style="white")

    for name, info in ENV_VARS.items():
        value = os.environ.get(name)
        if value is None:
            current = f"[dim]{info.get('default', '-')}[/dim]"
        elif is_secret_key(name) or name.endswith("DB_URL"):
            current = "********"
        else:
            current = escape(value)
        table.add_row(name, info["description"], current)

    console.print(table)


@main.command()
@click.pass_context
def profiles(ctx: click.Context):
    """List saved endpoint profiles."""
    from pulse_migrator.config import list_profiles

    try:
        saved = list_profiles(_app_root(ctx))
    except MigratorError as e:
        _fail(e)

    if not saved:
        console.print("[dim]No profiles saved. Add them to userdata/profiles.yaml.[/dim]")
        return
    for profile in saved:
        console.print(f"[cyan]{profile['name']}[/cyan]  {profile.get('url', '')}", highlight=False)


if __name__ == "__main__":
    main()
