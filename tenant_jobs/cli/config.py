"""Tenant Jobs config command - Configuration management."""

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from tenant_jobs.cli.error_handler import ConfigurationError, handle_errors
from tenant_jobs.cli.exit_codes import ExitCode

app = typer.Typer(help="Manage Tenant Jobs configuration.")
console = Console()


def _config_path() -> Path:
    from tenant_jobs.config import CONFIG_DIR, CONFIG_FILE, ENV_PREFIX

    # Environment variable override
    config_dir = Path(os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", CONFIG_DIR))
    return config_dir / CONFIG_FILE


@app.command("show")
@handle_errors
def show_config(
    section: Optional[str] = typer.Argument(
        None,
        help="Configuration section to show (e.g., scheduler, executor, retention).",
    ),
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format (table, yaml, json).",
    ),
    unmask: bool = typer.Option(
        False,
        "--unmask",
        help="Show unmasked secrets (use with caution).",
    ),
) -> None:
    """Show current configuration.

    Example:
        tenant-jobs config show
        tenant-jobs config show executor
        tenant-jobs config show --format yaml
    """
    from tenant_jobs.config import SECTIONS, config_to_dict, export_config_json, export_config_yaml, get_config

    config = get_config()

    if format == "yaml":
        console.print(Syntax(export_config_yaml(config, mask_secrets=not unmask), "yaml", theme="monokai"))
        return
    if format == "json":
        console.print(Syntax(export_config_json(config, mask_secrets=not unmask), "json", theme="monokai"))
        return
    if format != "table":
        raise ConfigurationError(f"Unknown format: {format}", exit_code=ExitCode.INVALID_ARGUMENT)

    data = config_to_dict(config, mask_secrets=not unmask)
    paths = {key: data.pop(key) for key in ("config_dir", "data_dir", "database_url")}
    data["paths"] = paths

    if section and section not in data:
        raise ConfigurationError(
            f"Unknown section: {section}",
            exit_code=ExitCode.INVALID_ARGUMENT,
            details={"sections": ", ".join([*SECTIONS, "paths"])},
        )

    for name in [section] if section else data.keys():
        table = Table(title=name.capitalize())
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for key, value in data[name].items():
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value) or "None"
            table.add_row(key, "" if value is None else str(value))
        console.print(table)
        console.print()


@app.command("get")
@handle_errors
def get_value(
    key: str = typer.Argument(
        ...,
        help="Configuration key (format: section.key, e.g., executor.max_concurrent_jobs).",
    ),
) -> None:
    """Print a single configuration value.

    Example:
        tenant-jobs config get scheduler.poll_interval
    """
    from tenant_jobs.config import config_to_dict, get_config

    value: object = config_to_dict(get_config())
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            raise ConfigurationError(f"Unknown configuration key: {key}", exit_code=ExitCode.NOT_FOUND)
        value = value[part]
    console.print("" if value is None else str(value))


@app.command("set")
@handle_errors
def set_config(
    key: str = typer.Argument(
        ...,
        help="Configuration key (format: section.key, e.g., scheduler.poll_interval).",
    ),
    value: str = typer.Argument(
        ...,
        help="Value to set.",
    ),
) -> None:
    """Set a configuration value.

    Example:
        tenant-jobs config set scheduler.poll_interval 15
        tenant-jobs config set executor.accepted_types webhook,api_call
        tenant-jobs config set retention.prune_enabled false
    """
    from tenant_jobs.config import clear_config_cache, set_config_value

    if "." not in key:
        raise ConfigurationError("Key must be in format: section.key", exit_code=ExitCode.INVALID_ARGUMENT)

    section, config_key = key.split(".", 1)
    try:
        set_config_value(section, config_key, value, _config_path())
    except ValueError as e:
        raise ConfigurationError(str(e), exit_code=ExitCode.INVALID_ARGUMENT)

    # New value is picked up on next access
    clear_config_cache()
    console.print(f"[green]✓[/green] Set {section}.{config_key} = {value}")


@app.command("init")
@handle_errors
def init_config(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing configuration.",
    ),
) -> None:
    """Write a configuration file with default values.

    Example:
        tenant-jobs config init
        tenant-jobs config init --force
    """
    from tenant_jobs.config import ENV_PREFIX, TenantJobsConfig, ensure_directories, save_config

    config_path = _config_path()
    if config_path.exists() and not force:
        console.print(f"[yellow]Configuration already exists at {config_path}[/yellow]")
        console.print("Use --force to overwrite")
        raise typer.Exit(code=ExitCode.GENERAL_ERROR)

    config = TenantJobsConfig(config_dir=config_path.parent)
    if data_dir := os.environ.get(f"{ENV_PREFIX}DATA_DIR"):
        config = TenantJobsConfig(config_dir=config_path.parent, data_dir=Path(data_dir))

    ensure_directories(config)
    save_config(config, config_path)
    # May contain the API token
    config_path.chmod(0o600)

    console.print(f"[green]✓[/green] Configuration initialized at {config_path}")
    console.print("[dim]Config file permissions set to 0600 (owner only)[/dim]")


@app.command("path")
def config_path() -> None:
    """Show configuration file path.

    Example:
        tenant-jobs config path
    """
    path = _config_path()
    console.print(f"[bold]Config directory:[/bold] {path.parent}")
    console.print(f"[bold]Config file:[/bold] {path}")
    console.print(f"[bold]Exists:[/bold] {path.exists()}")


@app.command("validate")
@handle_errors
def validate_config() -> None:
    """Validate current configuration.

    Example:
        tenant-jobs config validate
    """
    from tenant_jobs.config import get_config, validate_config as do_validate

    console.print("[bold]Validating configuration...[/bold]")
    console.print()

    exists = _config_path().exists()
    console.print(f"  {'[green]✓[/green]' if exists else '[yellow]![/yellow]'} Config file exists")

    all_passed = True
    for error in do_validate(get_config()):
        if error.severity == "error":
            status = "[red]✗[/red]"
            all_passed = False
        else:
            status = "[yellow]![/yellow]"
        console.print(f"  {status} {escape(str(error))}")

    console.print()
    if all_passed:
        console.print("[green]Configuration is valid[/green]")
    else:
        console.print("[red]Configuration has errors[/red]")
        raise typer.Exit(code=ExitCode.CONFIGURATION_ERROR)
