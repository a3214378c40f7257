"""Jobs Commands - Queue inspection and management"""

import json

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import OrchestratorClient, OrchestratorError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_logs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job management commands")


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs"""
    base_url = config.get("api.base_url")

    try:
        with OrchestratorClient(base_url) as client:
            data = client.list_jobs(status=status, type=type, limit=limit, offset=offset)

            jobs = data.get("jobs", [])
            total = data.get("total", len(jobs))

            if not jobs:
                console.print(
                    Panel(
                        "📭 [yellow]No jobs found[/yellow]",
                        title="Empty Results",
                        border_style="yellow",
                    )
                )
                return

            console.print(create_jobs_table(jobs))
            console.print(
                f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs"
            )
            if offset + limit < total:
                console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")

    except OrchestratorError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show a job"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            job = client.get_job(job_id)
            console.print(create_job_panel(job))
            if job.get("result"):
                console.print("\n[bold blue]Result:[/bold blue]")
                console.print_json(json.dumps(job["result"]))

    except OrchestratorError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("create")
def create_job(
    type: str = typer.Argument(..., help="Job type"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    priority: int = typer.Option(5, "--priority", min=1, max=10, help="1 (first) to 10"),
    scheduled_for: str | None = typer.Option(
        None, "--at", help="ISO timestamp before which the job is not dispatched"
    ),
    total_items: int | None = typer.Option(None, "--total", help="Expected item count"),
):
    """➕ Create a job"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON payload: {e}")
        raise typer.Exit(1) from None

    if not isinstance(payload_data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            job = client.create_job(
                type,
                payload_data,
                priority=priority,
                scheduled_for=scheduled_for,
                total_items=total_items,
            )
            print_success(f"Created {type} job {job.get('id')}")

    except OrchestratorError as e:
        if e.status_code == 409:
            print_error(f"A {type} job is already pending or processing")
        else:
            print_error(f"Failed to create job: {e}")
        raise typer.Exit(1) from None


@app.command("retry")
def retry_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔁 Reset a failed or cancelled job to pending"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            job = client.retry_job(job_id)
            print_success(f"Job {job_id} reset to {job.get('status')}")

    except OrchestratorError as e:
        print_error(f"Failed to retry job: {e}")
        raise typer.Exit(1) from None


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🛑 Cancel a pending or processing job"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            client.cancel_job(job_id)
            print_success(f"Job {job_id} cancelled")

    except OrchestratorError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None


@app.command("logs")
def job_logs(job_id: str = typer.Argument(..., help="Job ID")):
    """📜 Show a job's audit trail"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            logs = client.get_job_logs(job_id)
            if not logs:
                print_info("No log entries")
                return
            console.print(create_logs_table(logs))

    except OrchestratorError as e:
        print_error(f"Failed to get job logs: {e}")
        raise typer.Exit(1) from None


@app.command("stats")
def job_stats():
    """📊 Show queue statistics"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            console.print(create_stats_panel(client.get_job_stats()))

    except OrchestratorError as e:
        print_error(f"Failed to get stats: {e}")
        raise typer.Exit(1) from None
