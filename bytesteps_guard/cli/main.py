"""
CLI interface for ByteSteps Guard.

Operator commands for the persisted rate-limit and audit logs.
"""

import asyncio
import sqlite3
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from bytesteps_guard.config.loader import ResilienceConfig, load_resilience_config
from bytesteps_guard.core.audit import AuditSink
from bytesteps_guard.core.rate_limiter import RateLimiter
from bytesteps_guard.log import configure_logging
from bytesteps_guard.storage.audit_log import SqliteAuditStore
from bytesteps_guard.storage.db import initialize_schema
from bytesteps_guard.storage.rate_limits import SqliteRateLimitStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to resilience YAML config (defaults are used if omitted)"
)


def _load_config(path: Optional[str]) -> ResilienceConfig:
    if path is None:
        return ResilienceConfig()
    return load_resilience_config(path)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs")
):
    """ByteSteps Guard CLI."""
    if verbose:
        configure_logging(level="DEBUG")
    if ctx.invoked_subcommand is None:
        console.print("ByteSteps Guard - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption):
    """Initialize the rate-limit and audit database."""
    try:
        cfg = _load_config(config)
        initialize_schema(cfg.db_path)
        console.print(f"[green]✓[/] Database initialized at {cfg.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("check-config")
def check_config(path: str = typer.Argument(..., help="Path to resilience YAML config")):
    """Validate a configuration file and print the effective settings."""
    try:
        cfg = load_resilience_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("[green]✓[/] Configuration is valid")
    console.print(f"Database: {cfg.db_path}  Audit retention: {cfg.audit_max_records:,} events")
    console.print(
        f"Retries: {cfg.retry.max_retries} "
        f"(base delay {cfg.retry.base_delay_seconds:g}s, "
        f"cap {cfg.retry.max_delay_seconds:g}s, "
        f"attempt timeout {_format_optional_seconds(cfg.retry.attempt_timeout_seconds)})"
    )

    limits = Table(title="Rate limits")
    limits.add_column("Endpoint")
    limits.add_column("Max requests", justify="right")
    limits.add_column("Window", justify="right")
    for endpoint, rule in sorted(cfg.rate_limits.items()):
        limits.add_row(endpoint, str(rule.max_requests), f"{rule.window_seconds:g}s")
    limits.add_row("anonymous", str(cfg.anonymous.max_requests), f"{cfg.anonymous.window_seconds:g}s")
    console.print(limits)

    breakers = Table(title="Circuit breakers")
    breakers.add_column("Dependency")
    breakers.add_column("Failure threshold", justify="right")
    breakers.add_column("Recovery timeout", justify="right")
    breakers.add_row(
        "(default)",
        str(cfg.breaker_defaults.failure_threshold),
        f"{cfg.breaker_defaults.recovery_timeout:g}s"
    )
    for name, settings in sorted(cfg.breakers.items()):
        breakers.add_row(name, str(settings.failure_threshold), f"{settings.recovery_timeout:g}s")
    console.print(breakers)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def audit(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only show events for this user id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of events to show"),
    config: Optional[str] = ConfigOption,
):
    """Show the most recent audit events."""
    try:
        cfg = _load_config(config)
        sink = AuditSink(SqliteAuditStore(cfg.db_path, max_records=cfg.audit_max_records))
        events = sink.recent(limit=limit, user_id=user)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No audit log found[/]")
            console.print("Run `bytesteps-guard init` to initialize the database.\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not events:
        console.print("[dim]No audit events recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Audit events (newest first)")
    table.add_column("Time", no_wrap=True)
    table.add_column("Action", no_wrap=True)
    table.add_column("User")
    table.add_column("Details", overflow="fold")
    for event in events:
        details = ", ".join(
            f"{k}={v}" for k, v in event.details.items() if k != "stack"
        )
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.action,
            event.user_id or "-",
            details
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("purge-user")
def purge_user(
    user_id: str = typer.Argument(..., help="User id whose audit events are deleted"),
    config: Optional[str] = ConfigOption,
):
    """Delete a user's audit trail (data deletion request)."""
    try:
        cfg = _load_config(config)
        sink = AuditSink(SqliteAuditStore(cfg.db_path, max_records=cfg.audit_max_records))
        removed = asyncio.run(sink.delete_user_data(user_id))
    except Exception as e:
        console.print(f"[red]Error deleting user data:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Removed {removed} audit event(s) for {user_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cleanup(
    window: Optional[float] = typer.Option(
        None,
        "--window",
        "-w",
        help="Keep records newer than this many seconds (default: longest configured window)"
    ),
    config: Optional[str] = ConfigOption,
):
    """Prune expired rate-limit records."""
    try:
        cfg = _load_config(config)
        if window is None:
            window = max(
                [rule.window_seconds for rule in cfg.rate_limits.values()]
                + [cfg.anonymous.window_seconds]
            )
        limiter = RateLimiter(SqliteRateLimitStore(cfg.db_path))
        removed = limiter.cleanup(window)
    except Exception as e:
        console.print(f"[red]Error pruning rate-limit records:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Pruned {removed} expired rate-limit record(s)")
    sys.exit(EXIT_CODE_PASS)


def _format_optional_seconds(value: Optional[float]) -> str:
    """Format an optional duration."""
    return "none" if value is None else f"{value:g}s"


if __name__ == "__main__":
    app()
