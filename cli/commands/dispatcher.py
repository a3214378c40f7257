"""Dispatcher Commands - External scheduler for the job queue"""

import time

import typer
from rich.console import Console

from ..client.endpoints import OrchestratorClient, OrchestratorError
from ..utils.config_manager import config
from ..utils.formatting import print_error, print_info, print_success, print_warning

console = Console()
app = typer.Typer(name="dispatcher", help="Dispatcher tick commands")


def _report(result: dict) -> None:
    if not result.get("configured"):
        print_warning("Server has no worker URL or runner secret configured")
        return
    if result.get("reaped"):
        print_warning(f"Reaped {result['reaped']} stuck job(s)")
    if result.get("dispatched_job_id"):
        print_success(
            f"Dispatched {result.get('dispatched_job_type')} job "
            f"{result['dispatched_job_id']}"
        )
    else:
        console.print("[dim]Nothing to dispatch[/dim]")


@app.command("tick")
def tick():
    """⏱️ Run a single dispatcher tick"""
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            _report(client.dispatch_tick())

    except OrchestratorError as e:
        print_error(f"Dispatch failed: {e}")
        raise typer.Exit(1) from None


@app.command("run")
def run(
    interval: int | None = typer.Option(
        None, "--interval", "-i", min=1, help="Seconds between ticks"
    ),
    max_ticks: int | None = typer.Option(
        None, "--max-ticks", help="Stop after this many ticks"
    ),
):
    """🔄 Tick the dispatcher on a fixed interval"""
    interval = interval or int(config.get("dispatcher.interval_s", 15))
    print_info(f"Ticking every {interval}s (Ctrl+C to stop)")

    ticks = 0
    try:
        with OrchestratorClient(config.get("api.base_url")) as client:
            while True:
                try:
                    _report(client.dispatch_tick())
                except OrchestratorError as e:
                    # Keep the loop alive across transient API failures
                    print_error(f"Tick failed: {e}")
                    if e.status_code in (401, 503):
                        raise typer.Exit(1) from None

                ticks += 1
                if max_ticks and ticks >= max_ticks:
                    break
                time.sleep(interval)

    except KeyboardInterrupt:
        print_info(f"Stopped after {ticks} ticks")
