"""
Pulse Migrator UI Components

Console rendering of log lines and stage progress using the rich library.
"""

import re
import time
from typing import Optional, List, Dict

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from pulse_migrator.models import StageName, StageStatus, STAGE_ORDER


# Patterns that indicate a secret value
SECRET_PATTERNS = [
    "token", "password", "secret", "key", "credential",
    "api_key", "apikey", "auth", "bearer", "jwt",
]

# Regex patterns for common secret formats
SECRET_REGEXES = [
    r'eyJ[a-zA-Z0-9_\-]{10,}\.[a-zA-Z0-9_\-]{10,}\.[a-zA-Z0-9_\-]+',  # JWTs (anon/service role keys)
    r'sb_secret_[a-zA-Z0-9_\-]{16,}',  # Secret API keys
    r'sb_publishable_[a-zA-Z0-9_\-]{16,}',  # Publishable API keys
    r'ghp_[a-zA-Z0-9]{36,}',  # GitHub PAT
    r'(postgres(?:ql)?://[^:/\s]+:)[^@\s]+(@)',  # Passwords in connection strings
]


def mask_secrets(text: str, mask: str = "********") -> str:
    """Mask secrets in a string.

    Args:
        text: The text that may contain secrets
        mask: The string to replace secrets with

    Returns:
        Text with secrets masked
    """
    if not text:
        return text

    result = text

    # Mask known secret patterns in key=value format
    for pattern in SECRET_PATTERNS:
        regex = rf'({pattern}["\']?\s*[=:]\s*["\']?)([^"\'\s]+)(["\']?)'
        result = re.sub(regex, rf'\1{mask}\3', result, flags=re.IGNORECASE)

    for regex in SECRET_REGEXES:
        if regex.startswith("(postgres"):
            result = re.sub(regex, rf'\1{mask}\2', result)
        else:
            result = re.sub(regex, mask, result)

    return result


def is_secret_key(key: str) -> bool:
    """Check if a key name indicates it holds a secret value."""
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in SECRET_PATTERNS)


class MigratorUI:
    """Console output helpers for the CLI."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def print_header(self, title: str = "Pulse Migrator"):
        self.console.print()
        self.console.print(Panel(
            f"[bold blue]{title}[/bold blue]",
            border_style="blue",
            padding=(0, 2)
        ))
        self.console.print()

    def print_success(self, message: str):
        self.console.print(f"[green]✓[/green] {message}")

    def print_error(self, message: str):
        self.console.print(f"[red]✗[/red] {message}")

    def print_warning(self, message: str):
        self.console.print(f"[yellow]⚠[/yellow] {message}")

    def print_info(self, message: str):
        self.console.print(f"[blue]ℹ[/blue] {message}")

    def show_summary_table(self, title: str, data: Dict[str, str]):
        """Show a summary table with secrets masked."""
        table = Table(title=title, border_style="blue")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="white")

        for key, value in data.items():
            value = "" if value is None else str(value)
            if is_secret_key(key):
                display_value = "********" if value else "[dim]not set[/dim]"
            else:
                display_value = mask_secrets(value) if value else "[dim]not set[/dim]"
            table.add_row(key, display_value)

        self.console.print(table)


class StageBoard:
    """Stage timeline of one run, fed by progress events."""

    STATUS_ICONS = {
        StageStatus.PENDING: "[dim]○[/dim]",
        StageStatus.RUNNING: "[yellow]▶[/yellow]",
        StageStatus.DONE: "[green]✓[/green]",
        StageStatus.ERROR: "[red]✗[/red]",
        StageStatus.SKIPPED: "[dim]–[/dim]",
    }

    def __init__(self, stages: Optional[List[StageName]] = None):
        self.stages: Dict[StageName, dict] = {
            name: {"status": StageStatus.PENDING, "start_time": None, "duration": None}
            for name in (stages or STAGE_ORDER)
        }

    def update(self, stage: StageName, status: StageStatus):
        entry = self.stages[stage]
        entry["status"] = status
        if status == StageStatus.RUNNING:
            entry["start_time"] = time.time()
        elif entry["start_time"] is not None and status in (StageStatus.DONE, StageStatus.ERROR):
            entry["duration"] = time.time() - entry["start_time"]

    def status_of(self, stage: StageName) -> StageStatus:
        return self.stages[stage]["status"]

    def render(self) -> Table:
        """Render the timeline as a table."""
        table = Table(show_header=False, box=None)
        table.add_column("Status", width=3)
        table.add_column("Stage")
        table.add_column("State", style="dim")

        for name, entry in self.stages.items():
            status = entry["status"]
            label = f"[bold]{name.value}[/bold]" if status == StageStatus.RUNNING else name.value
            state = status.value.lower()
            if entry["duration"] is not None:
                state = f"{state} ({entry['duration']:.1f}s)"
            table.add_row(self.STATUS_ICONS[status], label, state)

        return table


class EventPrinter:
    """Event bus subscriber that prints events as they arrive."""

    LEVEL_STYLES = {
        "DEBUG": "dim",
        "INFO": "white",
        "WARNING": "yellow",
        "ERROR": "red",
    }

    def __init__(self, console: Optional[Console] = None, show_debug: bool = False):
        self.console = console or Console()
        self.show_debug = show_debug
        self.board = StageBoard()

    def __call__(self, event):
        if event.type == "log":
            level = event.level.value
            if level == "DEBUG" and not self.show_debug:
                return
            style = self.LEVEL_STYLES.get(level, "white")
            self.console.print(f"[{style}]{escape(mask_secrets(event.message))}[/{style}]", highlight=False)
        elif event.type == "progress":
            self.board.update(event.stage, event.status)
            icon = StageBoard.STATUS_ICONS[event.status]
            self.console.print(f"{icon} {event.stage.value}: {event.status.value.lower()}")
