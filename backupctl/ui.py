"""
Rich terminal UI components.
Status lines, panels, tables, progress bars, and the numbered selection prompt.
"""
import sys
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Generator, List, Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from .models import BackupOutcome, Category, RepositoryData, RestoreOutcome, Snapshot

# Detect ASCII fallback
try:
    "\U0001F4E6".encode(sys.stdout.encoding if sys.stdout and sys.stdout.encoding else "utf-8")
    HAS_UNICODE = True
except Exception:
    HAS_UNICODE = False

ICONS: Dict[str, str] = {
    "snapshot": "\U0001F4E6",
    "upload": "☁️",
    "download": "\U0001F4E5",
    "scan": "\U0001F50E",
    "success": "✅",
    "error": "❌",
    "warn": "⚠️",
    "info": "ℹ️",
    "daemon": "\U0001F47B",
    "doctor": "\U0001FA7A",
    "time": "\U0001F550",
    "host": "\U0001F5A5️",
}

ASCII_ICONS: Dict[str, str] = {
    "snapshot": "[PK]",
    "upload": "[UP]",
    "download": "[DWN]",
    "scan": "[SCN]",
    "success": "[OK]",
    "error": "[ERR]",
    "warn": "[WARN]",
    "info": "[INF]",
    "daemon": "[DMN]",
    "doctor": "[DOC]",
    "time": "[TIM]",
    "host": "[HST]",
}

STATUS_STYLES = {"success": "green", "partial": "yellow", "failure": "red"}

def icon(name: str) -> str:
    return ICONS.get(name, "") if HAS_UNICODE else ASCII_ICONS.get(name, "")

console = Console(width=120)
err_console = Console(stderr=True, width=120)

def render_banner(version: str) -> None:
    """Render the backupctl header panel."""
    banner_text = Text("BACKUPCTL", style="bold color(39)")
    banner_text.append(f"  v{version}\n", style="dim")
    banner_text.append("restic orchestration for categorized S3 repositories", style="dim magenta")
    console.print(Panel(banner_text, border_style="cyan", expand=False))

def render_status(action: str, message: str, style: str = "white") -> None:
    """Print a single line status update."""
    i = icon(action)
    console.print(f"{i} [{style}]{message}[/]")

def render_error(message: str) -> None:
    """Print a styled error panel."""
    i = icon("error")
    err_console.print()
    err_console.print(Panel(Text(message, style="red"), border_style="red", expand=False, title=f"{i} ERROR"))

def render_warning(message: str) -> None:
    """Print a styled warning panel."""
    i = icon("warn")
    console.print()
    console.print(Panel(Text(message, style="yellow"), border_style="yellow", expand=False, title=f"{i} WARNING"))

def confirm(prompt_text: str, default: bool = False) -> bool:
    """Interactive confirmation prompt. Ctrl-C counts as 'no'."""
    i = icon("warn")
    try:
        return typer.confirm(f"{i} {prompt_text}", default=default)
    except typer.Abort:
        return False

def render_table(title: str, headers: list[str], rows: list[list[str]]) -> None:
    """Render a structured Rich Table."""
    console.print()
    table = Table(
        title=title,
        border_style="cyan",
        header_style="bold magenta",
        show_lines=True,
        box=box.ROUNDED if HAS_UNICODE else box.ASCII
    )

    if headers:
        table.add_column(headers[0], justify="center", no_wrap=True)
        for h in headers[1:]:
            table.add_column(h, justify="left", overflow="fold")

    for r in rows:
        table.add_row(*r)

    console.print(table)
    console.print()

@contextmanager
def render_progress(title: str = "Operation in progress...") -> Generator[Progress, None, None]:
    """Provide a unified Progress context manager."""
    progress = Progress(
        SpinnerColumn(spinner_name="dots2", style="cyan"),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=40, style="magenta", complete_style="cyan"),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    )
    console.print(f"[{title}]", style="bold cyan")
    with progress:
        yield progress


class Prompter:
    """Numbered list selection and confirmation on the terminal."""

    def select(self, title: str, options: Sequence[str], default: int = 0) -> Optional[int]:
        """Return the chosen index, or None when the user cancels with 'q' or Ctrl-C."""
        console.print()
        console.print(f"[bold cyan]{title}[/]")
        for idx, option in enumerate(options, start=1):
            marker = "[bold green]>[/]" if idx - 1 == default else " "
            console.print(f" {marker} [magenta]{idx:>3}[/]  {option}")
        choices = [str(i) for i in range(1, len(options) + 1)] + ["q"]
        try:
            answer = Prompt.ask("Choice (q to cancel)", choices=choices, default=str(default + 1), show_choices=False)
        except (KeyboardInterrupt, EOFError):
            return None
        if answer == "q":
            return None
        return int(answer) - 1

    def confirm(self, text: str, default: bool = False) -> bool:
        return confirm(text, default)


def render_backup_summary(repos: List[RepositoryData], original_paths: Dict[str, Optional[str]], limit: int = 20) -> None:
    """Paths per category with snapshot counts, then a timeline grouped by minute."""
    by_category: Dict[Category, List[RepositoryData]] = defaultdict(list)
    for repo in repos:
        by_category[repo.address.category].append(repo)

    console.print("\n[bold]BACKUP PATHS SUMMARY[/]")
    for category in Category:
        entries = by_category.get(category, [])
        console.print(f"\n[cyan]{category.label}[/] ({len(entries)} paths):")
        if not entries:
            console.print("  None")
        for repo in entries:
            path = original_paths.get(repo.address.subpath) or f"[dim]{repo.address.segment}[/]"
            console.print(f"  {path:<50} - {len(repo.snapshots)} snapshots")

    console.print("\n[bold]SNAPSHOT TIMELINE[/]")
    timeline: Dict[str, List[Snapshot]] = defaultdict(list)
    for repo in repos:
        for snap in repo.snapshots:
            timeline[f"{snap.timestamp:%Y-%m-%d %H:%M}"].append(snap)
    if not timeline:
        console.print("No snapshots found")
        return

    times = sorted(timeline, reverse=True)
    for minute in times[:limit]:
        console.print(f"\n[green]{minute}[/]:")
        for snap in timeline[minute]:
            path = snap.paths[0] if snap.paths else "?"
            console.print(f"  - {path:<50} (id: {snap.short_id})")
    if len(times) > limit:
        console.print(f"\n... and {len(times) - limit} more time points")
    console.print()

def render_restore_outcome(outcome: RestoreOutcome) -> None:
    """Final restore report: per-pair table plus scan warnings."""
    if outcome.cancelled:
        render_status("warn", "Restore cancelled.", "yellow")
    rows = []
    for pair in outcome.pairs:
        rows.append([
            pair.status.upper().replace("_", " "),
            pair.original_path or pair.address.subpath,
            pair.snapshot_id or "-",
            pair.detail,
        ])
    if rows:
        render_table("Restore Report", ["Status", "Path", "Snapshot", "Detail"], rows)
    for warning in outcome.scan_warnings:
        render_status("warn", warning, "yellow")
    if outcome.pairs:
        style = STATUS_STYLES[outcome.status]
        render_status(
            "success" if outcome.status == "success" else "warn",
            f"Restore {outcome.status}: {outcome.count('succeeded')} succeeded, "
            f"{outcome.count('skipped') + outcome.count('no_eligible_snapshot')} skipped, "
            f"{outcome.count('failed')} failed",
            style,
        )

def render_backup_outcome(outcome: BackupOutcome) -> None:
    ok = outcome.count("succeeded")
    not_ok = len(outcome.paths) - ok
    if outcome.status == "failure":
        render_error(f"BACKUP FAILED: {ok} successful, {not_ok} failed/skipped. No data was backed up.")
    elif outcome.status == "partial":
        render_warning(f"Backup partially completed: {ok} successful, {not_ok} failed/skipped")
    else:
        render_status("success", f"Backup completed successfully: {ok} paths backed up", "green")
