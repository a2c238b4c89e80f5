"""
CLI interface for abuse-guard.

Administrative access to the store: schema setup, bans, URL checks and
statistics.
"""

import sys
from dataclasses import replace
from enum import Enum
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from abuse_guard.config.loader import default_guard_config, load_guard_config
from abuse_guard.core.bans import BanManager
from abuse_guard.core.guard import AbuseGuard
from abuse_guard.core.url_validator import validate_base_url
from abuse_guard.logging_config import configure_logging
from abuse_guard.storage.models import Severity

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to guard YAML configuration")
DB_OPTION = typer.Option(None, "--db", help="Path to SQLite database (overrides the config)")


class SubjectKind(str, Enum):
    ip = "ip"
    user = "user"


def _build_guard(config_path: Optional[str], db_path: Optional[str]) -> AbuseGuard:
    """Load configuration, set up logging and wire the guard."""
    config = load_guard_config(config_path) if config_path else default_guard_config()
    if db_path:
        config = replace(config, db_path=db_path)
    configure_logging(config.logging.level, config.logging.format)
    return AbuseGuard(config)


def _manager(guard: AbuseGuard, kind: SubjectKind) -> BanManager:
    return guard.ip_bans if kind is SubjectKind.ip else guard.user_bans


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "never"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """abuse-guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("abuse-guard - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = CONFIG_OPTION, db: Optional[str] = DB_OPTION):
    """Initialize the abuse-guard database."""
    try:
        guard = _build_guard(config, db)
        guard.initialize()
        console.print(f"[green]✓[/] Database initialized at {guard.config.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("check-url")
def check_url(url: str = typer.Argument(..., help="Base URL to validate")):
    """Check whether a relay base URL is allowed. Exits 1 if it is not."""
    result = validate_base_url(url)
    if result.is_valid:
        console.print(f"[green]✓[/] {result.reason}")
        sys.exit(EXIT_CODE_PASS)
    if result.is_blocked:
        console.print(f"[red]Blocked:[/] {result.reason} ({result.blocked_domain})")
    else:
        console.print(f"[yellow]Invalid:[/] {result.reason}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def ban(
    kind: SubjectKind = typer.Argument(..., help="What to ban: ip or user"),
    subject: str = typer.Argument(..., help="IP address or user id"),
    reason: str = typer.Option(..., "--reason", "-r", help="Reason for the ban"),
    minutes: int = typer.Option(0, "--minutes", "-m", help="Ban duration in minutes; 0 is permanent"),
    severity: Severity = typer.Option(Severity.MEDIUM, "--severity", "-s", help="Ban severity"),
    admin: str = typer.Option("cli", "--admin", "-a", help="Administrator issuing the ban"),
    config: Optional[str] = CONFIG_OPTION,
    db: Optional[str] = DB_OPTION,
):
    """Ban an IP address or a user."""
    try:
        guard = _build_guard(config, db)
        result = _manager(guard, kind).ban_subject(
            subject, reason, duration_minutes=minutes, severity=severity, actor_id=admin
        )
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.success:
        console.print(f"[red]Ban failed ({result.status_code}):[/] {result.error}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Banned {kind.value} {subject} until {_format_time(result.data.expires_at)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def unban(
    kind: SubjectKind = typer.Argument(..., help="What to unban: ip or user"),
    subject: str = typer.Argument(..., help="IP address or user id"),
    reason: str = typer.Option("manual", "--reason", "-r", help="Reason for lifting the ban"),
    admin: Optional[str] = typer.Option(None, "--admin", "-a", help="Administrator lifting the ban"),
    config: Optional[str] = CONFIG_OPTION,
    db: Optional[str] = DB_OPTION,
):
    """Lift the active ban of an IP address or a user."""
    try:
        guard = _build_guard(config, db)
        result = _manager(guard, kind).unban_subject(subject, reason, actor_id=admin)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.success:
        console.print(f"[red]Unban failed ({result.status_code}):[/] {result.error}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Unbanned {kind.value} {subject}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def bans(
    kind: SubjectKind = typer.Argument(..., help="Which bans to list: ip or user"),
    page: int = typer.Option(1, "--page", "-p", help="Page number"),
    limit: int = typer.Option(50, "--limit", "-l", help="Bans per page"),
    config: Optional[str] = CONFIG_OPTION,
    db: Optional[str] = DB_OPTION,
):
    """List active bans."""
    try:
        guard = _build_guard(config, db)
        result = _manager(guard, kind).list_bans(page=page, limit=limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.records:
        console.print(f"\n[dim]No active {kind.value} bans.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Active {kind.value} bans ({result.total} total)")
    table.add_column("Subject")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Banned at")
    table.add_column("Expires")
    table.add_column("Reason")
    for record in result.records:
        table.add_row(
            record.subject,
            record.ban_type.value,
            record.severity.value,
            _format_time(record.banned_at),
            _format_time(record.expires_at),
            record.reason,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sweep(config: Optional[str] = CONFIG_OPTION, db: Optional[str] = DB_OPTION):
    """Deactivate bans whose expiry has passed."""
    try:
        guard = _build_guard(config, db)
        expired_ips = guard.ip_bans.sweep_expired()
        expired_users = guard.user_bans.sweep_expired()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Expired {expired_ips} IP bans and {expired_users} user bans")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(
    days: int = typer.Option(7, "--days", "-d", help="Security event lookback in days"),
    config: Optional[str] = CONFIG_OPTION,
    db: Optional[str] = DB_OPTION,
):
    """Show ban and security event statistics."""
    try:
        guard = _build_guard(config, db)
        ip_stats = guard.ip_bans.get_ban_stats()
        user_stats = guard.user_bans.get_ban_stats()
        event_stats = guard.events.get_security_stats(days)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    failed = [s["error"] for s in (ip_stats, user_stats, event_stats) if "error" in s]
    if failed:
        console.print(f"[red]Error:[/] {failed[0]}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Bans")
    table.add_column("Kind")
    table.add_column("Active", justify="right")
    table.add_column("Inactive", justify="right")
    table.add_column("Last 24h", justify="right")
    for label, data in (("ip", ip_stats), ("user", user_stats)):
        table.add_row(label, str(data["total_active"]), str(data["total_inactive"]), str(data["recent"]))
    console.print(table)

    console.print(f"\n[bold]Security events (last {days} days):[/bold] {event_stats['total_events']}")
    events_table = Table()
    events_table.add_column("Event type")
    events_table.add_column("Count", justify="right")
    for event_type, count in sorted(event_stats["events_by_type"].items(), key=lambda item: -item[1]):
        events_table.add_row(event_type, str(count))
    if event_stats["events_by_type"]:
        console.print(events_table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="User id"),
    trust_level: int = typer.Option(..., "--trust-level", "-t", help="The user's trust level (0-4)"),
    config: Optional[str] = CONFIG_OPTION,
    db: Optional[str] = DB_OPTION,
):
    """Show today's usage against the user's daily limits."""
    try:
        guard = _build_guard(config, db)
        result = guard.usage.get_user_limit_info(user_id, trust_level)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result["success"]:
        console.print(f"[red]Error:[/] {result['error']}")
        sys.exit(EXIT_CODE_FAIL)

    info = result["info"]
    console.print(f"\n[bold]User:[/bold] {user_id}")
    console.print(f"Trust level: {info['trust_level']} ({info['trust_level_name']})")
    table = Table()
    table.add_column("Usage type")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    for usage_type, counts in info["daily_limits"].items():
        table.add_row(usage_type, str(counts["current"]), str(counts["limit"]), str(counts["remaining"]))
    console.print(table)
    console.print(f"Resets at {_format_time(info['reset_time'])}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
