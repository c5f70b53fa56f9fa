"""Terminal output formatting with rich."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

from lorehub.models import SyncResult, Workspace

# Global console instance - auto-detects TTY
console = Console()

STATUS_STYLES = {
    "living": "green",
    "proclaimed": "bold green",
    "whispered": "yellow",
    "ancient": "dim",
    "archived": "dim red",
}


def print_error(message: str) -> None:
    """Print error message in red."""
    console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print success message in green."""
    console.print(f"[green]{message}[/green]")


def print_warning(message: str) -> None:
    """Print warning message in yellow."""
    console.print(f"[yellow]{message}[/yellow]")


def format_status(status: str) -> Text:
    """Format a lore status with its color."""
    return Text(status, style=STATUS_STYLES.get(status, "white"))


def create_workspace_table(workspaces: list[Workspace]) -> Table:
    """Create a table listing workspaces.

    Args:
        workspaces: Workspaces to show, default first.

    Returns:
        Rich Table object
    """
    table = Table(title="Workspaces")
    table.add_column("Name", style="bold")
    table.add_column("Sync")
    table.add_column("Remote", style="cyan")
    table.add_column("Branch")
    table.add_column("Auto")
    for workspace in workspaces:
        name = f"{workspace.name} *" if workspace.is_default else workspace.name
        table.add_row(
            name,
            "[green]on[/green]" if workspace.sync_enabled else "[dim]off[/dim]",
            workspace.sync_repo or "[dim]-[/dim]",
            workspace.sync_branch,
            f"{workspace.sync_interval}s" if workspace.auto_sync else "[dim]no[/dim]",
        )
    return table


def create_realm_table(realms: list[dict[str, Any]]) -> Table:
    table = Table(title="Realms")
    table.add_column("Name", style="bold")
    table.add_column("Path", style="cyan")
    table.add_column("ID", style="dim")
    for realm in realms:
        table.add_row(realm["name"], realm["path"], realm["id"])
    return table


def print_lore_item(lore: dict[str, Any]) -> None:
    """Print a formatted lore (for list command).

    Args:
        lore: Lore dictionary
    """
    title = Text()
    title.append(f"[{lore['type']}] ", style="cyan")
    title.append(lore["content"], style="bold")
    title.append(" ")
    title.append_text(format_status(lore["status"]))
    console.print(title)
    console.print(f"  ID: [dim]{lore['id']}[/dim]")
    if lore.get("why"):
        console.print(f"  Why: {lore['why']}")
    if lore.get("sigils"):
        console.print(f"  Sigils: [cyan]{', '.join(lore['sigils'])}[/cyan]")
    console.print()


def print_sync_result(result: SyncResult, action: str = "Sync") -> None:
    """Print the outcome of a push, pull or sync.

    Args:
        result: Result to show.
        action: Name of the operation for the heading.
    """
    if result.conflicts:
        print_warning(
            f"{action} stopped: {result.conflicts} conflicted file(s), "
            "manual resolution required. Resolve them in the sync directory, "
            "then sync again."
        )
    elif result.errors:
        print_error(f"{action} finished with errors")
    else:
        print_success(f"{action} complete:")

    console.print(f"  Pulled:    [cyan]{result.pulled}[/cyan]")
    console.print(f"  Pushed:    [green]{result.pushed}[/green]")
    console.print(f"  Conflicts: [yellow]{result.conflicts}[/yellow]")
    for error in result.errors:
        console.print(f"  [red]-[/red] {error}")


def create_status_table(status: dict[str, Any]) -> Table:
    """Create a table for sync status.

    Args:
        status: Dictionary from GitSyncAdapter.status()

    Returns:
        Rich Table object
    """
    table = Table(title=f"Sync status: {status['workspace']}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    labels = [
        ("path", "Directory"),
        ("initialized", "Initialized"),
        ("branch", "Branch"),
        ("remote", "Remote"),
        ("head", "Head"),
        ("last_applied_commit", "Last applied"),
        ("last_sync", "Last sync"),
        ("uncommitted", "Uncommitted files"),
        ("logged_changes", "Logged changes"),
        ("pending_outbox", "Queued changes"),
    ]
    for key, label in labels:
        value = status.get(key)
        table.add_row(label, "-" if value is None else str(value))
    return table
