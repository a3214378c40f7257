"""Configuration Commands - CLI settings management"""

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from ..utils.config_manager import config
from ..utils.formatting import print_error, print_info, print_success

console = Console()
app = typer.Typer(name="config", help="CLI configuration management")

SECRET_KEYS = {"api.runner_secret"}


@app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key (e.g., 'api.base_url')"),
    value: str = typer.Argument(..., help="Configuration value"),
):
    """⚙️ Set a configuration value"""
    if key == "api.base_url" and not value.startswith(("http://", "https://")):
        print_error("API base URL must start with http:// or https://")
        raise typer.Exit(1)

    numeric_keys = (".timeout", ".interval_s", ".batch_size")
    if key.endswith(numeric_keys):
        if not value.isdigit():
            print_error(f"{key} must be a positive integer")
            raise typer.Exit(1)
        parsed: str | int = int(value)
    else:
        parsed = value

    try:
        config.set(key, parsed)
    except OSError as e:
        print_error(f"Failed to set configuration: {e}")
        raise typer.Exit(1) from None

    shown = "********" if key in SECRET_KEYS else parsed
    print_success(f"Set {key} = {shown}")

    if key == "api.base_url":
        print_info("Test connection with: orchestrator status")
    elif key == "imports.batch_size" and not 1 <= int(parsed) <= 100:
        print_info("The server caps batch size at 100 rows")


@app.command("get")
def get_config(
    key: str | None = typer.Argument(
        None, help="Configuration key (optional - shows all if omitted)"
    ),
):
    """📋 Get configuration value(s)"""
    if not key:
        show_all_config()
        return

    value = config.get(key)
    if value is None:
        console.print(f"[yellow]Key '{key}' not found[/yellow]")
        console.print(
            "Use [cyan]orchestrator config show[/cyan] to see all available keys"
        )
    else:
        if key in SECRET_KEYS:
            value = "********"
        console.print(f"[cyan]{key}[/cyan] = [yellow]{value}[/yellow]")


@app.command("show")
def show_all_config():
    """📊 Show all configuration settings"""
    console.print(
        Panel(
            "[bold cyan]Job Orchestrator CLI Configuration[/bold cyan]\n\n"
            f"[dim]Configuration is stored in {config.config_file}[/dim]",
            title="Configuration",
            border_style="blue",
        )
    )

    _display_config_section(config.load_config(), "")


@app.command("reset")
def reset_config(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🔄 Reset configuration to defaults"""
    if not yes and not Confirm.ask(
        "⚠️ This will reset ALL configuration to defaults. Continue?"
    ):
        console.print("Configuration reset cancelled.")
        return

    try:
        config.reset()
    except OSError as e:
        print_error(f"Failed to reset configuration: {e}")
        raise typer.Exit(1) from None

    print_success("Configuration reset to defaults")
    console.print("💡 Use [cyan]orchestrator config show[/cyan] to see current settings")


@app.command("path")
def show_config_path():
    """📁 Show configuration file path"""
    console.print(f"Configuration file: [cyan]{config.config_file}[/cyan]")
    console.print(f"Configuration directory: [blue]{config.config_dir}[/blue]")

    if config.config_file.exists():
        size = config.config_file.stat().st_size
        console.print(f"File size: [yellow]{size} bytes[/yellow]")
    else:
        console.print("[dim]Configuration file will be created on first use[/dim]")


def _display_config_section(data, prefix: str, indent: int = 0):
    """Recursively display configuration sections"""
    indent_str = "  " * indent

    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else key

        if isinstance(value, dict):
            console.print(f"{indent_str}[bold blue]{key}:[/bold blue]")
            _display_config_section(value, full_key, indent + 1)
            continue

        if full_key in SECRET_KEYS and value:
            display_value = "[dim]********[/dim]"
        elif value is None:
            display_value = "[dim]not set[/dim]"
        elif isinstance(value, bool):
            color = "green" if value else "red"
            display_value = f"[{color}]{value}[/{color}]"
        elif isinstance(value, int | float):
            display_value = f"[cyan]{value}[/cyan]"
        elif isinstance(value, str) and value.startswith("http"):
            display_value = f"[blue]{value}[/blue]"
        else:
            display_value = f"[yellow]{value}[/yellow]"

        console.print(f"{indent_str}[cyan]{key}[/cyan]: {display_value}")
