"""Job Orchestrator CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import OrchestratorClient, OrchestratorError
from .commands import config, dispatcher, imports, jobs
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="orchestrator",
    help="⚙️ Job Orchestrator - background jobs, dispatcher and batch imports",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(imports.app, name="imports")
app.add_typer(dispatcher.app, name="dispatcher")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API health, database and queue"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with OrchestratorClient(base_url) as client:
            health = client.health_check()

    except OrchestratorError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the orchestrator API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]orchestrator config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    database = health.get("database") or {}
    queue = health.get("queue") or {}
    ok = health.get("ok", False)
    dispatcher_line = (
        "[green]configured[/green]"
        if queue.get("dispatcher_configured")
        else "[yellow]not configured[/yellow]"
    )

    console.print(
        Panel(
            f"{'🚀 [green]Healthy[/green]' if ok else '⚠️ [red]Degraded[/red]'}\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Database: {'[green]connected[/green]' if database.get('connected') else '[red]down[/red]'}"
            f" ({database.get('response_time_ms', '-')} ms)\n"
            f"• Queue depth: [cyan]{queue.get('queue_depth', 0)}[/cyan]\n"
            f"• Stuck jobs: [red]{queue.get('stuck_jobs_count', 0)}[/red]\n"
            f"• Dispatcher: {dispatcher_line}\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green" if ok else "red",
        )
    )
    if not ok:
        raise typer.Exit(1)


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"⚙️ [bold cyan]Job Orchestrator CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Type: [yellow]Command Line Interface[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.callback()
def main(
    version: bool | None = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    ⚙️ Job Orchestrator CLI

    Create and inspect background jobs, tick the dispatcher on a schedule,
    and drive batch imports to completion.
    """
    if version:
        from . import __version__

        console.print(f"Job Orchestrator CLI v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
