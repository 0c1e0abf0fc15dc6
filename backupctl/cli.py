"""
Command Line Interface entry point using Typer.
"""
import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.panel import Panel

from . import __version__
from .audit import AuditLogger, get_audit_log
from .cache import SnapshotCache
from .config import Settings, get_settings, store_password, write_sample_env
from .errors import BackupServiceError
from .models import BackupPathOutcome
from .ui import (
    console,
    render_backup_outcome,
    render_backup_summary,
    render_banner,
    render_error,
    render_progress,
    render_restore_outcome,
    render_status,
    render_table,
    render_warning,
)
from .utils import human_size, setup_logging

app = typer.Typer(
    help=(
        f"[bold cyan]BACKUPCTL[/] [dim]v{__version__}[/]\n\n"
        "restic backups of user, docker volume and system paths to S3-compatible storage.\n"
    ),
    no_args_is_help=True,
    rich_markup_mode="rich"
)

@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    setup_logging(verbose)

def _settings() -> Settings:
    try:
        return get_settings()
    except BackupServiceError as e:
        render_error(f"{e}\nRun 'backupctl init' to create a sample .env file.")
        raise typer.Exit(1)


@app.command(name="run")
def run_backup_cmd(
    paths: Optional[List[str]] = typer.Argument(None, help="Extra paths to back up"),
):
    """Back up configured paths, extra paths and docker volumes."""
    from .backup import collect_paths, BackupWorkflow

    render_banner(__version__)
    settings = _settings()
    audit = AuditLogger()
    try:
        targets = collect_paths(settings.paths, paths or [], settings.backup_docker_volumes_root)
        if not targets:
            render_warning("No paths configured. Set BACKUP_PATHS or pass paths as arguments.")
            raise typer.Exit(1)

        render_status("upload", f"Backing up {len(targets)} paths as host '{settings.hostname}'")
        workflow = BackupWorkflow.from_settings(settings)
        with render_progress("Running restic backups...") as progress:
            task = progress.add_task("Backing up", total=len(targets))

            def advance(outcome: BackupPathOutcome) -> None:
                progress.advance(task)

            outcome = workflow.run(targets, on_path=advance)
    except BackupServiceError as e:
        render_error(str(e))
        raise typer.Exit(1)

    rows = []
    for p in outcome.paths:
        status = p.status.upper()
        if p.warning:
            status += " (WARN)"
        rows.append([status, p.path, p.snapshot_id or "-", p.detail])
    render_table("Backup Report", ["Status", "Path", "Snapshot", "Detail"], rows)
    render_backup_outcome(outcome)
    audit.backup(outcome)

    if outcome.status == "failure":
        raise typer.Exit(1)

@app.command(name="hosts")
def hosts_cmd():
    """List hosts with backups in the repository."""
    from .discovery import discover_hosts

    settings = _settings()
    try:
        with console.status("[cyan]Listing hosts..."):
            hosts = discover_hosts(settings)
    except BackupServiceError as e:
        render_error(str(e))
        raise typer.Exit(1)

    if not hosts:
        render_status("info", "No hosts found.")
        return
    for h in hosts:
        marker = " [dim](this machine)[/]" if h == settings.hostname else ""
        console.print(f"{h}{marker}")

@app.command(name="list")
def list_cmd(
    host: Optional[str] = typer.Option(None, "--host", "-H", help="Host to list (defaults to this machine)"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format."),
):
    """Show backed up paths per category and a snapshot timeline."""
    from .discovery import DiscoveryScanner

    settings = _settings()
    target = host or settings.hostname
    cache = SnapshotCache()
    scanner = DiscoveryScanner.from_settings(settings, cache)

    try:
        if json_output:
            result = scanner.scan(target)
        else:
            render_banner(__version__)
            with render_progress(f"Scanning repositories for {target}...") as progress:
                task = progress.add_task("Scanning", total=None)
                result = scanner.scan(target, on_progress=lambda address, ok: progress.advance(task))
    except BackupServiceError as e:
        render_error(str(e))
        raise typer.Exit(1)

    if json_output:
        data = [
            {
                "repository": r.address.subpath,
                "category": r.address.category.value,
                "path": cache.original_path(r.address),
                "snapshots": [s.model_dump(mode="json") for s in r.snapshots],
            }
            for r in result.repos
        ]
        print(json.dumps(data, indent=2))
        return

    if not result.repos and not result.failures:
        render_status("info", f"No backups found for host '{target}'.")
        return

    original_paths = {r.address.subpath: cache.original_path(r.address) for r in result.repos}
    render_backup_summary(result.repos, original_paths)
    for failure in result.failures:
        render_status("warn", f"{failure.address}: {failure.error}", "yellow")

@app.command(name="restore")
def restore_cmd(
    host: Optional[str] = typer.Option(None, "--host", "-H", help="Host to restore from"),
    path: Optional[str] = typer.Option(None, "--path", "-p", help="Original path to restore"),
    timestamp: Optional[str] = typer.Option(None, "--timestamp", "-t", help="Point in time (ISO 8601)"),
):
    """Interactively restore files from a point in time."""
    from .restore import restore_interactive

    render_banner(__version__)
    settings = _settings()
    audit = AuditLogger()
    try:
        outcome = restore_interactive(settings, SnapshotCache(), host=host, path=path, timestamp=timestamp)
    except BackupServiceError as e:
        render_error(str(e))
        raise typer.Exit(1)

    render_restore_outcome(outcome)
    audit.restore(outcome, host)
    if not outcome.cancelled and outcome.pairs and outcome.status == "failure":
        raise typer.Exit(1)

@app.command(name="size")
def size_cmd(path: str = typer.Argument(..., help="Backed up path")):
    """Show the raw data size of the latest snapshot of a path."""
    from .engine import ResticEngine
    from .paths import address_for

    settings = _settings()
    try:
        address = address_for(path.rstrip("/") or "/", settings.hostname,
                               settings.backup_home_root, settings.backup_docker_volumes_root)
        with console.status(f"[cyan]Calculating size of {path}..."):
            size = ResticEngine(settings).stats(settings.repo_url(address), path)
    except BackupServiceError as e:
        render_error(str(e))
        raise typer.Exit(1)
    console.print(f"{path}: [bold]{human_size(size)}[/]")

@app.command(name="init")
def init_cmd(
    path: Path = typer.Option(Path(".env"), "--path", help="Where to write the sample file"),
):
    """Create a sample .env configuration file."""
    if write_sample_env(path):
        render_status("success", f"Created sample configuration at {path}. Edit it with your settings.", "green")
    else:
        render_warning(f"{path} already exists. Not overwriting.")

@app.command(name="set-password")
def set_password_cmd(
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Store the restic repository password in the OS keyring."""
    try:
        store_password(password)
    except BackupServiceError as e:
        render_error(str(e))
        raise typer.Exit(1)
    render_status("success", "Password stored in OS keyring.", "green")

@app.command(name="doctor")
def run_doctor():
    """Run the diagnostic suite."""
    from .doctor import run_diagnostics

    render_banner(__version__)
    settings: Optional[Settings] = None
    config_error: Optional[str] = None
    try:
        settings = get_settings()
    except BackupServiceError as e:
        config_error = str(e)

    with console.status("[cyan]Running diagnostic checks..."):
        results = run_diagnostics(settings, config_error)

    rows = []
    for r in results:
        status_text = "[bold green]PASS[/]" if r.status == "pass" else "[bold yellow]WARN[/]" if r.status == "warn" else "[bold red]FAIL[/]"
        rows.append([status_text, r.name, r.detail])

    render_table("backupctl Doctor", ["Status", "Check", "Details"], rows)
    if any(r.status == "fail" for r in results):
        raise typer.Exit(1)

@app.command(name="daemon")
def run_daemon(
    interval: int = typer.Option(60, "--interval", "-i", help="Interval in minutes"),
    generate: bool = typer.Option(False, "--generate", help="Just generate service file instead of running"),
):
    """Run scheduled backups in the foreground."""
    from .daemon import DaemonProcess, generate_systemd_unit

    if generate:
        unit = generate_systemd_unit(interval, str(Path(".env").resolve()))
        console.print(Panel(unit, title="Systemd Unit File", border_style="cyan"))
        return

    settings = _settings()
    render_banner(__version__)
    render_status("daemon", f"Backing up every {interval}m as host '{settings.hostname}'...")
    try:
        DaemonProcess(settings, interval).start()
    except BackupServiceError as e:
        render_error(str(e))
        raise typer.Exit(1)

@app.command(name="audit")
def show_audit(last_n: int = typer.Option(50, "--last", "-n", help="Number of recent events to show")):
    """Show recent audit logs."""
    render_banner(__version__)
    events = get_audit_log(last_n)
    if not events:
        render_status("info", "No audit events found.")
        return

    rows = []
    for e in events:
        rows.append([e["timestamp"], e["event"], json.dumps(e["details"], default=str)])

    render_table("Audit Log", ["Timestamp", "Event", "Details"], rows)

@app.command(name="version")
def version_cmd():
    """Display backupctl version information."""
    console.print(Panel(
        f"[bold cyan]BACKUPCTL[/] v{__version__}\n[dim]Python {sys.version.split()[0]}[/]",
        border_style="cyan",
        expand=False,
    ))


if __name__ == "__main__":
    app()
