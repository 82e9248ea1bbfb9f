from __future__ import annotations

from typing import Any, Dict, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from sqlrepo.config import DatabaseSettings

# Display order and labels for Database.stats() keys.
STAT_LABELS = {
    "max_open_connections": "Max open",
    "open_connections": "Open",
    "in_use": "In use",
    "idle": "Idle",
    "wait_count": "Waits",
    "wait_duration": "Wait time (s)",
    "max_idle_closed": "Closed (idle)",
    "max_lifetime_closed": "Closed (lifetime)",
}


def _format_value(key: str, value: Any) -> str:
    if key == "wait_duration":
        return f"{float(value):.3f}"
    if isinstance(value, int):
        return f"{value:,}"
    return str(value)


def build_stats_table(stats: Dict[str, Any], title: str = "Connection Pool") -> Table:
    """
    Build a two-column rich table from a `Database.stats()` snapshot.

    Unknown keys are appended after the known ones, in their original order.
    """
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Counter", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right", style="magenta")

    for key, label in STAT_LABELS.items():
        if key in stats:
            table.add_row(label, _format_value(key, stats[key]))
    for key, value in stats.items():
        if key not in STAT_LABELS:
            table.add_row(key, _format_value(key, value))
    return table


def print_stats(
    stats: Dict[str, Any],
    settings: Optional[DatabaseSettings] = None,
    console: Optional[Console] = None,
) -> None:
    """
    Render pool statistics as a rich table.
    """
    console = console or Console()
    if not stats:
        console.print("[yellow]No statistics to display.[/yellow]")
        return

    title = "Connection Pool"
    if settings is not None:
        title = f"{title}\n[dim]{settings.driver} │ {settings.masked_dsn()}[/dim]"
    console.print(build_stats_table(stats, title=title))


__all__ = ["STAT_LABELS", "build_stats_table", "print_stats"]
