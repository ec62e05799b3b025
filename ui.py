"""
Rich terminal UI components for the workbench.

WHY THIS FILE EXISTS:
--------------------
The CLI needs to display command output, import results, project trees and
snapshot history in a readable way. Rich provides the terminal formatting:
panels, tables, colors.

DESIGN PRINCIPLES:
-----------------
1. Command output is streamed raw (no markup interpretation)
2. Status lines use the same ✓ / ✗ / ⚠ / ℹ markers everywhere
3. Long lists are truncated with a "... and N more" line

COMPONENTS:
----------
- output_sinks() - stdout/stderr callbacks for a running command
- show_command_result() - exit status after a command
- show_import_result() - what an import brought in and left out
- show_project_tree() - ASCII tree of the project
- show_history() - snapshot table
- show_search_results() - search hits
"""

from collections import Counter

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from project import SearchMatch, render_tree
from schemas import CommandResult, ImportResult, ProjectState, Snapshot

# Global console instance for consistent output
console = Console()
error_console = Console(stderr=True)


SKIP_REASON_LABELS = {
    "excluded": "excluded paths",
    "binary": "binary files",
    "too_large": "over size limit",
    "file_cap": "over file-count limit",
    "byte_cap": "over total-size limit",
    "fetch_failed": "fetch failed",
    "not_text": "not text",
}


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    error_console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def show_thinking(message: str = "Working..."):
    """
    Context manager that shows a spinner while processing.

    Usage:
        with show_thinking("Importing..."):
            result = await import_project(url)
    """
    return console.status(f"[bold blue]{message}[/bold blue]", spinner="dots")


# =============================================================================
# COMMAND OUTPUT
# =============================================================================

def output_sinks():
    """
    Callbacks that print a command's output as it streams in.

    Returns:
        (on_stdout, on_stderr)
    """
    def on_stdout(chunk: str) -> None:
        console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True)

    def on_stderr(chunk: str) -> None:
        console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True, style="red")

    return on_stdout, on_stderr


def show_command_start(command: str) -> None:
    console.print(f"[bold]$[/bold] {command}", highlight=False)


def show_command_result(result: CommandResult) -> None:
    """Display how a command ended."""
    if result.cancelled_by == "timeout":
        show_warning(f"Command timed out [dim]({result.duration_ms / 1000:.1f}s, exit {result.exit_code})[/dim]")
    elif result.cancelled_by == "user":
        show_warning(f"Command stopped [dim](exit {result.exit_code})[/dim]")
    elif result.exit_code != 0:
        console.print(f"[red]\\[exit {result.exit_code}][/red]")
    else:
        console.print(f"[dim]done in {result.duration_ms / 1000:.1f}s[/dim]")


# =============================================================================
# IMPORT DISPLAY
# =============================================================================

def show_import_result(result: ImportResult) -> None:
    """
    Display the outcome of a repository import.

    Args:
        result: The ImportResult to display
    """
    show_header("Import complete", str(result.reference))

    console.print(f"[bold]Revision:[/bold] {result.revision[:12]}")
    console.print(f"[bold]Files:[/bold] {len(result.files)}")

    for record in result.files[:10]:
        console.print(f"  [green]+[/green] {record.path}")
    if len(result.files) > 10:
        console.print(f"  [dim]... and {len(result.files) - 10} more[/dim]")

    if result.skipped:
        counts = Counter(entry.reason for entry in result.skipped)
        summary = ", ".join(
            f"{count} {SKIP_REASON_LABELS.get(reason, reason)}"
            for reason, count in counts.most_common()
        )
        console.print(f"\n[bold]Skipped:[/bold] [dim]{summary}[/dim]")


# =============================================================================
# PROJECT DISPLAY
# =============================================================================

def show_project_tree(state: ProjectState, title: str = "Project") -> None:
    """Display the project as a tree inside a panel."""
    if not state.files:
        console.print("[dim]Project is empty.[/dim]")
        return

    console.print(Panel(
        render_tree(state),
        title=f"{title} ({len(state.file_records())} files)",
        border_style="blue",
        expand=False,
    ))


def show_history(snapshots: list[Snapshot]) -> None:
    """
    Display saved snapshots, newest first.

    Args:
        snapshots: Snapshots oldest first, as WorkspaceStore.history() returns
    """
    if not snapshots:
        console.print("[dim]No snapshots saved yet.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Saved", style="dim")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")

    for index, snapshot in enumerate(reversed(snapshots)):
        records = snapshot.state.file_records()
        size = sum(len(r.content or "") for r in records)
        label = "current" if index == 0 else f"-{index}"
        table.add_row(
            label,
            snapshot.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            str(len(records)),
            f"{size:,}",
        )

    console.print(table)


def show_search_results(matches: list[SearchMatch], query: str) -> None:
    """Display search hits as path:line:column lines."""
    if not matches:
        console.print(f"[dim]No matches for '{query}'.[/dim]")
        return

    for match in matches:
        console.print(
            f"[cyan]{match.path}[/cyan]:[yellow]{match.line}[/yellow]:{match.column}  {match.preview}",
            highlight=False,
        )
    console.print(f"\n[dim]{len(matches)} matches[/dim]")


# =============================================================================
# WELCOME / HELP
# =============================================================================

def show_welcome() -> None:
    """Display welcome message."""
    console.print(Panel.fit(
        "[bold blue]Workbench[/bold blue]\n"
        "[dim]Edit, run, save and import small projects[/dim]",
        border_style="blue"
    ))


def show_quick_help() -> None:
    """Display quick help."""
    console.print("""
[bold]Usage:[/bold]
  workbench "python main.py"                 Run a command against the project
  workbench --import https://github.com/o/r  Import a public GitHub repository
  workbench --from-dir ./app                 Load a local folder as the project
  workbench --tree                           Show the project files
  workbench --history                        List saved snapshots
  workbench --rollback                       Restore the previous snapshot
  workbench --help                           Show full help
""")
