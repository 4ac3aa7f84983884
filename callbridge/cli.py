#!/usr/bin/env python3
"""
callbridge CLI Interface

This module provides a command-line interface for exercising and inspecting
the call bridge: simulating call pushes, driving the ringing connection,
draining the pending-action mailbox and managing configuration.
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .bridge import CallBridge
from .config.manager import ConfigManager, DEFAULT_CONFIG_FILE
from .config.schema import DEFAULT_CONFIG, BridgeSettings
from .core.models import TYPE_INCOMING_CALL, IncomingCallFact, PendingAction
from .core.ports import CallUi
from .logging_config import configure_logging

# Initialize Typer app and Rich console
app = typer.Typer(
    name="callbridge",
    help="callbridge - Incoming call admission and lifecycle CLI",
    add_completion=False,
    no_args_is_help=True,
)
config_app = typer.Typer(
    name="config",
    help="Configuration management for callbridge",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")
console = Console()

_state = {"config_file": None}


class ConsoleCallUi(CallUi):
    """Renders call UI events on the terminal."""

    def show_incoming_call(self, connection_key: str, display_name: str) -> None:
        console.print(Panel.fit(
            f"[bold green]Incoming call[/bold green] from [bold]{display_name}[/bold]\n"
            f"Connection: {connection_key}",
            title="Ringing",
        ))

    def close_incoming_call(self, connection_key: str) -> None:
        console.print(f"[dim]Incoming call screen closed: {connection_key}[/dim]")

    def launch_application(self, action: str) -> None:
        console.print(f"[cyan]Application launched to handle pending {action}[/cyan]")


def _config_manager() -> ConfigManager:
    return ConfigManager(_state["config_file"])


def _build_bridge() -> CallBridge:
    settings = _config_manager().get_config()
    try:
        return CallBridge.from_settings(settings, ui=ConsoleCallUi())
    except Exception as e:
        console.print(f"[red]Error opening bridge store: {e}[/red]")
        raise typer.Exit(1)


@app.callback()
def main(
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file (default: $CALLBRIDGE_CONFIG_FILE)"
    ),
):
    """Load configuration and set up logging for every command."""
    _state["config_file"] = config_file
    settings = _config_manager().get_config()
    configure_logging(**settings.get_log_config())


@app.command()
def version():
    """Show version information."""
    console.print(Panel.fit(
        f"[bold blue]callbridge[/bold blue]\nVersion: {__version__}",
        title="Version Information",
    ))


@app.command()
def push(
    caller_key: str = typer.Option(..., "--caller-key", "-k", help="Stable caller identity"),
    call_id: Optional[str] = typer.Option(None, "--call-id", help="Call identifier"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Caller display name"),
    ts: Optional[int] = typer.Option(None, "--ts", help="Server timestamp (epoch ms)"),
    message_type: str = typer.Option(TYPE_INCOMING_CALL, "--type", help="Push message type"),
    native: bool = typer.Option(True, "--native/--no-native", help="Request native call signaling"),
    offer: Optional[str] = typer.Option(None, "--offer", help="Offer payload sent with the call"),
    answer: bool = typer.Option(False, "--answer", help="Answer the call once it rings"),
    reject: bool = typer.Option(False, "--reject", help="Reject the call once it rings"),
):
    """Simulate an incoming call push message."""
    if answer and reject:
        console.print("[red]--answer and --reject are mutually exclusive[/red]")
        raise typer.Exit(2)

    data = {
        "type": message_type,
        "caller_key": caller_key,
        "native_telecom": "true" if native else "false",
    }
    if call_id is not None:
        data["call_id"] = call_id
    if name is not None:
        data["caller_name"] = name
    if ts is not None:
        data["server_ts_ms"] = str(ts)
    if offer is not None:
        data["offer_data"] = offer

    bridge = _build_bridge()
    try:
        handled = bridge.handle_push(data)
        if handled:
            console.print("[green]✅ Push handled by callbridge[/green]")
        else:
            console.print("[yellow]Push not handled, fallback notification applies[/yellow]")

        if answer or reject:
            fact = IncomingCallFact.from_push_data(data)
            connection = bridge.lookup_connection(fact.connection_key) if fact else None
            if connection is None:
                console.print("[red]❌ No ringing connection to act on[/red]")
                raise typer.Exit(1)
            done = connection.answer() if answer else connection.reject()
            outcome = "answered" if answer else "rejected"
            if done:
                console.print(f"[green]✅ Call {outcome}[/green]")
            else:
                console.print(f"[red]❌ Call could not be {outcome}[/red]")
                raise typer.Exit(1)
    finally:
        bridge.close()


@app.command()
def status():
    """Show the persisted bridge state."""
    bridge = _build_bridge()
    try:
        snapshot = bridge.store.snapshot()
        active = bridge.store.get_active_call_key()
    finally:
        bridge.close()

    table = Table(title="Bridge Store")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for field_name in sorted(snapshot):
        value = snapshot[field_name]
        if len(value) > 60:
            value = value[:57] + "..."
        table.add_row(field_name, value)
    console.print(table)
    console.print(f"Active call: [bold]{active or 'none'}[/bold]")


@app.command()
def pending(
    action: PendingAction = typer.Argument(..., help="Mailbox slot to drain"),
):
    """Read and clear a pending-action mailbox slot."""
    bridge = _build_bridge()
    try:
        if action is PendingAction.ACCEPT:
            record = bridge.get_and_clear_pending_accept()
        else:
            record = bridge.get_and_clear_pending_reject()
    finally:
        bridge.close()

    if record is None:
        console.print(f"No pending {action.value}")
        return
    console.print_json(record.to_json())


@app.command("clear-active")
def clear_active():
    """Force-release the active call guard."""
    bridge = _build_bridge()
    try:
        cleared = bridge.clear_active_call()
    finally:
        bridge.close()
    if cleared:
        console.print("[green]✅ Active call guard cleared[/green]")
    else:
        console.print("[red]❌ Failed to clear active call guard[/red]")
        raise typer.Exit(1)


@app.command()
def offer(
    caller_key: str = typer.Option(..., "--caller-key", "-k", help="Caller the offer belongs to"),
    payload: str = typer.Option(..., "--payload", "-p", help="Offer payload"),
    call_id: Optional[str] = typer.Option(None, "--call-id", help="Call identifier"),
    ts: Optional[int] = typer.Option(None, "--ts", help="Server timestamp (epoch ms)"),
):
    """Cache an incoming offer for a later accept."""
    bridge = _build_bridge()
    try:
        cached = bridge.cache_incoming_offer(caller_key, call_id, ts, payload)
    finally:
        bridge.close()
    if not cached:
        console.print("[red]❌ Failed to cache offer[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✅ Offer cached for {caller_key}[/green]")


def show_config_summary(config: BridgeSettings, include_secrets: bool = False) -> None:
    """Show configuration summary."""
    table = Table(title="Configuration Summary")
    table.add_column("Section", style="cyan")
    table.add_column("Setting", style="magenta")
    table.add_column("Value", style="green")

    redis_url = config.store.redis_url if include_secrets else config.masked_redis_url()

    table.add_row("Admission", "TTL (ms)", str(config.admission.ttl_ms))
    table.add_row("", "Stale guard (ms)", str(config.admission.stale_guard_ms))
    table.add_row("", "Future tolerance (ms)", str(config.admission.future_tolerance_ms))
    table.add_row("", "Dedup bucket (ms)", str(config.admission.dedup_bucket_ms))
    table.add_row("Store", "Backend", config.store.backend)
    table.add_row("", "Namespace", config.store.namespace)
    table.add_row("", "File", config.store.file_path)
    table.add_row("", "Redis URL", redis_url)
    table.add_row("Signaling", "Enabled", str(config.signaling.enabled))
    table.add_row("", "Account", config.signaling.account_id)
    table.add_row("UI", "Display name length", str(config.ui.display_name_length))
    table.add_row("Logging", "Level", config.logging.level)
    table.add_row("", "Format", config.logging.format)

    console.print(table)


@config_app.command("show")
def config_show(
    include_secrets: bool = typer.Option(False, "--secrets", "-s", help="Include secret values"),
    as_json: bool = typer.Option(False, "--json", help="Print the configuration as JSON"),
) -> None:
    """Show current configuration."""
    manager = _config_manager()
    if as_json:
        console.print_json(json.dumps(manager.export_config(include_secrets)))
        return
    show_config_summary(manager.get_config(), include_secrets)


@config_app.command("validate")
def config_validate(
    config_file: Optional[str] = typer.Option(None, "--file", "-f", help="Configuration file to validate"),
) -> None:
    """Validate configuration file and environment variables."""
    if config_file and not Path(config_file).exists():
        console.print(f"[red]❌ Configuration file not found: {config_file}[/red]")
        raise typer.Exit(1)

    manager = ConfigManager(config_file) if config_file else _config_manager()
    is_valid, errors = manager.validate_config()
    if is_valid:
        console.print("[green]✅ Configuration is valid![/green]")
        return

    console.print("[red]❌ Configuration validation failed:[/red]")
    for error in errors:
        console.print(f"  • {error}")
    raise typer.Exit(1)


@config_app.command("init")
def config_init(
    path: str = typer.Option(DEFAULT_CONFIG_FILE, "--path", "-p", help="Configuration file to write"),
    force: bool = typer.Option(False, "--force", help="Overwrite without asking"),
) -> None:
    """Initialize configuration file with default values."""
    config_file = Path(path)
    if config_file.exists() and not force:
        if not Confirm.ask(f"Configuration file {config_file} already exists. Overwrite?"):
            console.print("Configuration initialization cancelled.")
            return

    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, 'w', encoding='utf-8') as f:
        json.dump(DEFAULT_CONFIG.model_dump(mode="json"), f, indent=2, ensure_ascii=False)

    console.print(f"[green]✅ Configuration initialized: {config_file}[/green]")


if __name__ == "__main__":
    app()
