"""Imports Commands - Batch import upload and driving"""

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel

from ..client.endpoints import OrchestratorClient, OrchestratorError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_import_errors_table,
    create_import_panel,
    create_imports_table,
    create_progress_bar,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="imports", help="Batch import commands")


@app.command("create")
def create_import(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON array of rows"),
    kind: str | None = typer.Option(None, "--kind", "-k", help="Row processor name"),
):
    """📤 Upload a JSON file as a new import job"""
    try:
        rows = json.loads(file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON format: {e}")
        raise typer.Exit(1) from None

    if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
        print_error("JSON must be an array of objects")
        raise typer.Exit(1)

    kind = kind or config.get("imports.kind")
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            job = client.create_import(rows, kind=kind, filename=file.name)
            print_success(f"Created import {job.get('id')} with {job.get('total_rows')} rows")
            print_info(f"Run it with: orchestrator imports run {job.get('id')}")

    except OrchestratorError as e:
        print_error(f"Failed to create import: {e}")
        raise typer.Exit(1) from None


@app.command("list")
def list_imports(
    status: list[str] | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of imports to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N imports"),
):
    """📋 List import jobs"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            data = client.list_imports(status=status, limit=limit, offset=offset)
            jobs = data.get("jobs", [])
            if not jobs:
                console.print(
                    Panel("📭 [yellow]No imports found[/yellow]", border_style="yellow")
                )
                return
            console.print(create_imports_table(jobs))
            console.print(
                f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of "
                f"[yellow]{data.get('total', len(jobs))}[/yellow] imports"
            )

    except OrchestratorError as e:
        print_error(f"Failed to list imports: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_import(job_id: str = typer.Argument(..., help="Import job ID")):
    """🔍 Show an import job and its row errors"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            job = client.get_import(job_id)
            console.print(create_import_panel(job))
            errors = job.get("errors", [])
            if errors:
                console.print(create_import_errors_table(errors))

    except OrchestratorError as e:
        print_error(f"Failed to get import: {e}")
        raise typer.Exit(1) from None


@app.command("process")
def process_import(
    job_id: str = typer.Argument(..., help="Import job ID"),
    batch_size: int | None = typer.Option(
        None, "--batch-size", "-b", min=1, max=100, help="Rows per batch"
    ),
):
    """⚙️ Process a single batch"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            result = client.process_import(job_id, batch_size)
            _print_batch(result)

    except OrchestratorError as e:
        print_error(f"Failed to process batch: {e}")
        raise typer.Exit(1) from None


@app.command("run")
def run_import(
    job_id: str = typer.Argument(..., help="Import job ID"),
    batch_size: int | None = typer.Option(
        None, "--batch-size", "-b", min=1, max=100, help="Rows per batch"
    ),
    max_batches: int | None = typer.Option(
        None, "--max-batches", help="Stop after this many batches"
    ),
):
    """🚀 Drive an import to completion, one batch at a time"""
    batch_size = batch_size or int(config.get("imports.batch_size", 50))
    batches = 0
    errors = 0

    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            with Live(create_progress_bar(0, 1), console=console, transient=True) as live:
                while True:
                    result = client.process_import(job_id, batch_size)
                    batches += 1
                    state = result.get("job", {})
                    errors += len(result.get("batch", {}).get("errors", []))
                    live.update(
                        create_progress_bar(
                            state.get("processed_rows", 0), state.get("total_rows", 0)
                        )
                    )

                    if state.get("is_complete"):
                        break
                    if max_batches and batches >= max_batches:
                        break

    except OrchestratorError as e:
        if e.status_code == 409:
            print_warning("Another client is processing this import")
        print_error(f"Import stopped after {batches} batches: {e}")
        raise typer.Exit(1) from None

    if state.get("is_complete"):
        print_success(
            f"Import complete: {state.get('processed_rows')}/{state.get('total_rows')} rows, "
            f"{errors} errors in this run"
        )
    else:
        print_info(
            f"Stopped after {batches} batches at "
            f"{state.get('processed_rows')}/{state.get('total_rows')} rows"
        )


@app.command("cancel")
def cancel_import(job_id: str = typer.Argument(..., help="Import job ID")):
    """🛑 Cancel an import"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            client.cancel_import(job_id)
            print_success(f"Import {job_id} cancelled")

    except OrchestratorError as e:
        print_error(f"Failed to cancel import: {e}")
        raise typer.Exit(1) from None


def _print_batch(result: dict):
    batch = result.get("batch", {})
    state = result.get("job", {})
    console.print(
        Panel(
            f"• Processed: [cyan]{batch.get('processed', 0)}[/cyan]\n"
            f"• Imported: [green]{batch.get('imported', 0)}[/green]\n"
            f"• Updated: [cyan]{batch.get('updated', 0)}[/cyan]\n"
            f"• Skipped: [yellow]{batch.get('skipped', 0)}[/yellow]\n"
            f"• Skipped (claimed): [yellow]{batch.get('skipped_claimed', 0)}[/yellow]\n"
            f"• Errors: [red]{len(batch.get('errors', []))}[/red]\n\n"
            f"Job: {state.get('status')} "
            f"{state.get('processed_rows')}/{state.get('total_rows')}"
            f"{' ✅ complete' if state.get('is_complete') else ''}",
            title="Batch",
            border_style="green" if state.get("is_complete") else "blue",
        )
    )
    if batch.get("errors"):
        console.print(create_import_errors_table(batch["errors"]))
