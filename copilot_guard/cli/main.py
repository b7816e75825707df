"""
CLI interface for Copilot Guard.

Operator commands for the database, retention sweeps, guardrail checks and
quota inspection.
"""

import logging
import sys
from typing import Optional
import sqlite3

import typer
import yaml
from rich.console import Console
from rich.table import Table

from copilot_guard.config.loader import CopilotConfig, config_to_dict, load_copilot_config
from copilot_guard.core.guardrails import sanitize_copilot_text
from copilot_guard.core.quota import can_admit
from copilot_guard.core.retention import RetentionSweeper, resolve_retention_policy
from copilot_guard.core.errors import CopilotError
from copilot_guard.storage.db import DEFAULT_DB_PATH
from copilot_guard.storage.quota_store import QuotaRepository
from copilot_guard.storage.repository import CopilotRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_state = {"db_path": DEFAULT_DB_PATH, "config_path": None}


def _load_config() -> CopilotConfig:
    if _state["config_path"]:
        return load_copilot_config(_state["config_path"])
    return CopilotConfig.default()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
):
    """Copilot Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["db_path"] = db
    _state["config_path"] = config
    if ctx.invoked_subcommand is None:
        console.print("Copilot Guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the Copilot Guard database."""
    try:
        initialize_schema(_state["db_path"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status():
    """Show the effective configuration."""
    try:
        config = _load_config()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Copilot Guard configuration")
    table.add_column("Section")
    table.add_column("Setting")
    table.add_column("Value", justify="right")
    for section, values in config_to_dict(config).items():
        for key, value in values.items():
            table.add_row(section, key, str(value))
    console.print(f"Database: {_state['db_path']}")
    console.print(table)


@app.command()
def sweep(
    live: bool = typer.Option(
        False,
        "--live",
        help="Actually delete rows; without it the sweep is a dry run"
    ),
    events_days: Optional[int] = typer.Option(None, "--events-days", help="Event retention in days"),
    summaries_days: Optional[int] = typer.Option(None, "--summaries-days", help="Summary retention in days"),
    sessions_days: Optional[int] = typer.Option(None, "--sessions-days", help="Session retention in days"),
):
    """
    Run a retention sweep.

    Deletes events, summaries and terminal sessions older than their
    retention windows. Active sessions are never deleted.
    """
    try:
        config = _load_config()
        policy = resolve_retention_policy(
            {
                "events_days": events_days,
                "summaries_days": summaries_days,
                "sessions_days": sessions_days,
            },
            config.retention,
        )
        sweeper = RetentionSweeper(CopilotRepository(_state["db_path"]))
        result = sweeper.sweep(policy=policy, dry_run=not live)
    except (FileNotFoundError, ValueError, yaml.YAMLError, CopilotError, sqlite3.Error) as e:
        console.print(f"[red]Retention sweep failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    title = "Retention dry run" if result.dry_run else "Retention sweep"
    table = Table(title=title)
    table.add_column("Entity")
    table.add_column("Older than")
    table.add_column("Deleted", justify="right")
    cutoffs = result.to_dict()["cutoffs"]
    for entity in ("events", "summaries", "sessions"):
        table.add_row(entity, cutoffs[f"{entity}_before"], str(result.deleted[entity]))
    console.print(table)
    if result.dry_run:
        console.print("[yellow]Dry run: no data was deleted. Pass --live to delete.[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sanitize(text: str = typer.Argument(..., help="Text to run through the content guardrails")):
    """Show what the content guardrails do to a piece of text."""
    try:
        config = _load_config()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    result = sanitize_copilot_text(text, config.guardrail.max_length)
    console.print(result.sanitized, markup=False)
    if result.redactions:
        console.print(f"[bold]Redactions:[/] {', '.join(result.redactions)}")
    if result.has_prompt_injection:
        console.print("[bold red]Prompt injection detected[/] - no suggestion would be generated")


@app.command()
def quota(user_id: str = typer.Argument(..., help="User to inspect")):
    """Show a user's remaining copilot minutes."""
    try:
        config = _load_config()
        store = QuotaRepository(
            monthly_limit=config.quota.monthly_minutes,
            daily_limit=config.quota.daily_minutes,
            session_limit=config.quota.session_minutes,
            db_path=_state["db_path"],
        )
        snapshot = store.get_quota_snapshot(user_id)
    except (FileNotFoundError, ValueError, yaml.YAMLError, sqlite3.Error) as e:
        console.print(f"[red]Error reading quota:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Copilot quota for {user_id}")
    table.add_column("Window")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    for name, window in (
        ("monthly", snapshot.monthly),
        ("daily", snapshot.daily),
        ("next session", snapshot.per_session),
    ):
        table.add_row(name, str(window.used), str(window.limit), str(window.remaining))
    console.print(table)
    if can_admit(snapshot):
        console.print("[green]✓[/] A new session would be admitted")
    else:
        console.print("[red]✗[/] A new session would be rejected: quota exceeded")


if __name__ == "__main__":
    app()
