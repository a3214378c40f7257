"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for the jobs list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="center", style="yellow")
    table.add_column("Attempts", justify="center")
    table.add_column("Progress", justify="right")
    table.add_column("Created", justify="left", style="blue")

    for job in jobs:
        progress = job.get("progress_percentage")
        table.add_row(
            str(job.get("id", ""))[:8],  # Short ID
            job.get("type", ""),
            format_status(job.get("status", "")),
            str(job.get("priority", "-")),
            f"{job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
            f"{progress:.0f}%" if progress is not None else "-",
            str(job.get("created_at", ""))[:19],
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create detailed panel for a single job"""
    lines = [
        f"🆔 [bold]ID:[/bold] [cyan]{job.get('id')}[/cyan]",
        f"📝 [bold]Type:[/bold] [magenta]{job.get('type')}[/magenta]",
        f"📊 [bold]Status:[/bold] {format_status(job.get('status', ''))}",
        f"⚡ [bold]Priority:[/bold] {job.get('priority')}",
        f"🔁 [bold]Attempts:[/bold] {job.get('attempts')}/{job.get('max_attempts')}",
    ]
    if job.get("total_items") is not None:
        lines.append(
            f"📈 [bold]Progress:[/bold] {job.get('processed_items')}/{job.get('total_items')}"
            f" ({job.get('failed_items', 0)} failed)"
        )
    if job.get("next_retry_at"):
        lines.append(f"⏳ [bold]Next retry:[/bold] {job['next_retry_at']}")
    if job.get("last_error"):
        lines.append(f"❌ [bold]Last error:[/bold] [red]{job['last_error']}[/red]")
    lines.append(f"📅 [bold]Created:[/bold] [blue]{job.get('created_at')}[/blue]")
    if job.get("completed_at"):
        lines.append(f"🏁 [bold]Finished:[/bold] [blue]{job['completed_at']}[/blue]")

    return Panel("\n".join(lines), title="Job", border_style="blue")


def create_logs_table(logs: list[dict[str, Any]]) -> Table:
    table = Table(title="Job Log", box=box.ROUNDED)

    table.add_column("Time", style="blue", no_wrap=True)
    table.add_column("Action", style="magenta")
    table.add_column("Level", justify="center")
    table.add_column("Message", style="white")

    level_styles = {"error": "red", "warning": "yellow", "info": "green", "debug": "dim"}
    for entry in logs:
        level = entry.get("level", "info")
        style = level_styles.get(level, "white")
        table.add_row(
            str(entry.get("created_at", ""))[:19],
            entry.get("action", ""),
            f"[{style}]{level}[/{style}]",
            entry.get("message") or "",
        )

    return table


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for queue statistics"""
    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"  • {format_status(name)}: {count}" for name, count in by_status.items()
    )
    by_type = stats.get("by_type", {})
    type_lines = "\n".join(f"  • {name}: {count}" for name, count in by_type.items())

    content = (
        f"📊 [bold blue]Queue Statistics[/bold blue]\n\n"
        f"• Total jobs: [cyan]{stats.get('total_jobs', 0)}[/cyan]\n"
        f"• Queue depth: [yellow]{stats.get('queue_depth', 0)}[/yellow]\n"
        f"• Stuck jobs: [red]{stats.get('stuck_jobs', 0)}[/red]\n\n"
        f"[bold]By status[/bold]\n{status_lines or '  -'}\n\n"
        f"[bold]By type[/bold]\n{type_lines or '  -'}"
    )
    return Panel(content, title="Job Stats", border_style="green")


def create_imports_table(jobs: list[dict[str, Any]]) -> Table:
    table = Table(title="Imports", box=box.ROUNDED)

    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind", style="magenta")
    table.add_column("File", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Rows", justify="right")
    table.add_column("Errors", justify="right", style="red")

    for job in jobs:
        table.add_row(
            str(job.get("id", ""))[:8],
            job.get("kind", ""),
            job.get("filename") or "-",
            format_status(job.get("status", "")),
            f"{job.get('processed_rows', 0)}/{job.get('total_rows', 0)}",
            str(job.get("error_count", 0)),
        )

    return table


def create_import_panel(job: dict[str, Any]) -> Panel:
    """Create detailed panel for an import job with its counters"""
    total = job.get("total_rows", 0) or 0
    processed = job.get("processed_rows", 0) or 0
    content = (
        f"🆔 [bold]ID:[/bold] [cyan]{job.get('id')}[/cyan]\n"
        f"📁 [bold]File:[/bold] {job.get('filename') or '-'} ({job.get('kind')})\n"
        f"📊 [bold]Status:[/bold] {format_status(job.get('status', ''))}\n"
        f"📈 [bold]Rows:[/bold] {processed}/{total}\n\n"
        f"• Imported: [green]{job.get('imported_count', 0)}[/green]\n"
        f"• Updated: [cyan]{job.get('updated_count', 0)}[/cyan]\n"
        f"• Skipped: [yellow]{job.get('skipped_count', 0)}[/yellow]\n"
        f"• Skipped (claimed): [yellow]{job.get('skipped_claimed_count', 0)}[/yellow]\n"
        f"• Errors: [red]{job.get('error_count', 0)}[/red]\n"
        f"• Pending images: [blue]{job.get('pending_image_count', 0)}[/blue]"
    )
    return Panel(content, title="Import", border_style="blue")


def create_import_errors_table(errors: list[dict[str, Any]]) -> Table:
    table = Table(title="Row Errors", box=box.ROUNDED)

    table.add_column("Row", justify="right", style="cyan")
    table.add_column("Identifier", style="magenta")
    table.add_column("Message", style="red")

    for error in errors:
        table.add_row(
            str(error.get("row_index", "")),
            error.get("external_identifier") or "-",
            error.get("message", ""),
        )

    return table


def create_progress_bar(processed: int, total: int) -> ProgressBar:
    return ProgressBar(total=max(total, 1), completed=processed, width=40)
