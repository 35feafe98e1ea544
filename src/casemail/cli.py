"""Command-line interface for casemail.

Usage:
    python -m casemail validate-config
    python -m casemail check-health
    python -m casemail run
    python -m casemail triage EMAIL_COURTS_SUPREME_COURT --apply
    python -m casemail counts
    python -m casemail purge RAW_DATA_HEADERS --yes
    python -m casemail status
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from casemail.config import validate_config_file
from casemail.core.logging import configure_logging

if TYPE_CHECKING:
    from casemail.config_schema import AppConfig
    from casemail.db.store import KVDatabase, StoreRegistry
    from casemail.engine.triage import TriageDecision
    from casemail.mail.client import MailSourceClient

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    database: KVDatabase
    stores: StoreRegistry
    client: MailSourceClient


async def _init_cli_deps() -> CLIDeps:
    """Load config, open the database and resolve every store.

    Prints an actionable error and exits with status 1 on failure.
    """
    from casemail.config import get_config
    from casemail.core.errors import ConfigLoadError, ConfigValidationError, StorageError
    from casemail.db.store import KVDatabase, StoreRegistry
    from casemail.mail.client import MailSourceClient

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml from config/config.yaml.example, "
            "or point CASEMAIL_CONFIG_PATH at your config file."
        )
        sys.exit(1)

    database = KVDatabase(config.storage.db_path)
    try:
        await database.initialize()
    except StorageError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        sys.exit(1)

    return CLIDeps(
        config=config,
        database=database,
        stores=StoreRegistry.from_config(database, config),
        client=MailSourceClient(config.mail_source.base_url),
    )


def _run_async(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine with the CLI's standard error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON logs (for schedulers and log shippers)")
def cli(debug: bool, json_logs: bool) -> None:
    """casemail - mailbox ingestion, case routing and triage."""
    log_level = "DEBUG" if debug else "INFO"
    configure_logging(log_level=log_level, json_output=json_logs)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file against the schema."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    console.print(f"\n[red]✗[/red] {message}")
    sys.exit(1)


@cli.command("check-health")
def check_health() -> None:
    """Probe the mail source and record the result for the pipeline."""
    _run_async(_check_health())


async def _check_health() -> None:
    deps = await _init_cli_deps()
    report = deps.client.check_health(timeout=deps.config.mail_source.health_timeout_seconds)
    for key in deps.config.pipeline.health_keys:
        await deps.stores.state.put(key, report.to_json())

    colour = "green" if report.ok else "red"
    console.print(f"Mail source: [{colour}]{report.status}[/{colour}] ({report.timestamp})")
    if not report.ok:
        sys.exit(1)


@cli.command("run")
def run() -> None:
    """Run one pipeline pass: retrieve, route, triage."""
    _run_async(_run_pipeline_once())


async def _run_pipeline_once() -> None:
    from casemail.engine.pipeline import PipelineOrchestrator
    from casemail.mail.retriever import Retriever

    deps = await _init_cli_deps()
    orchestrator = PipelineOrchestrator(
        retriever=Retriever(deps.client, deps.config.mail_source),
        stores=deps.stores,
        config=deps.config,
    )
    summary = await orchestrator.run()

    colour = {"complete": "green", "skipped": "yellow", "error": "red"}[summary.status]
    console.print(
        f"\n[bold]Pipeline Run[/bold] (run {summary.run_id[:8]}...) "
        f"[{colour}]{summary.status}[/{colour}]"
    )
    if summary.reason:
        console.print(f"  Reason:      {summary.reason}")
    if summary.error:
        console.print(f"  Error:       {summary.error}")
    if summary.status != "skipped":
        console.print(f"  Fetched:     {summary.fetched}")
        console.print(f"  New:         {summary.new_emails}")
        console.print(f"  Excluded:    {summary.spam_trash_excluded} spam/trash, "
                      f"{summary.older_than_cutoff} old, {summary.duplicates} duplicate")
        console.print(f"  Raw stored:  {summary.raw_stored}")
        console.print(f"  Matched:     {summary.filtered_stored}")
        for category, count in sorted(summary.route_stats.items()):
            console.print(f"    {category}: {count}")
        console.print(f"  Pending:     {summary.triage_total} ({summary.triage_no_action} no-action)")
        console.print(f"  Watermark:   {summary.watermark or '-'}")
    console.print(f"  Duration:    {summary.duration_ms}ms")

    if summary.status == "error":
        sys.exit(1)


@cli.command("triage")
@click.argument("store_name")
@click.option("--apply", "apply_levels", is_flag=True, help="Write levels back to the store")
@click.option(
    "--close-no-action",
    is_flag=True,
    help="Only close NO_ACTION records, leave the rest pending",
)
def triage(store_name: str, apply_levels: bool, close_no_action: bool) -> None:
    """List triage decisions for pending records in STORE_NAME.

    Read-only unless --apply or --close-no-action is given.
    """
    if apply_levels and close_no_action:
        raise click.UsageError("--apply and --close-no-action are mutually exclusive")
    _run_async(_triage(store_name, apply_levels, close_no_action))


async def _triage(store_name: str, apply_levels: bool, close_no_action: bool) -> None:
    from casemail.engine.triage import TriageEngine

    deps = await _init_cli_deps()
    engine = TriageEngine(deps.stores, deps.config.triage)

    try:
        decisions = await engine.scan(store_name)
    except KeyError as e:
        console.print(f"[red]{e.args[0]}[/red]")
        sys.exit(1)

    _print_decisions(store_name, decisions)

    if apply_levels:
        result = await engine.apply_levels(decisions, store_name)
        console.print(
            f"\nApplied: {result.triaged} triaged, {result.closed} closed, "
            f"{result.skipped} skipped"
        )
    elif close_no_action:
        closed = await engine.close_no_action(decisions, store_name)
        console.print(f"\nClosed {closed} no-action records")


def _print_decisions(store_name: str, decisions: list[TriageDecision]) -> None:
    if not decisions:
        console.print(f"No pending records in [cyan]{store_name}[/cyan]")
        return

    table = Table(title=f"Pending in {store_name}")
    table.add_column("Key", style="dim")
    table.add_column("Level", no_wrap=True)
    table.add_column("From")
    table.add_column("Subject")
    table.add_column("Suggested action")
    level_style = {"NO_ACTION": "dim", "SIMPLE": "green", "COMPLEX": "bold red"}
    for d in decisions:
        table.add_row(
            d.key,
            f"[{level_style[d.level]}]{d.level}[/{level_style[d.level]}]",
            d.sender,
            d.subject[:60],
            d.suggested_action or "-",
        )
    console.print(table)


@cli.command("counts")
def counts() -> None:
    """Show how many records each store holds."""
    _run_async(_counts())


async def _counts() -> None:
    deps = await _init_cli_deps()
    by_namespace = await deps.database.count_by_namespace()

    table = Table(title="Store counts")
    table.add_column("Store")
    table.add_column("Records", justify="right")
    for name in deps.stores.message_stores():
        table.add_row(name, str(by_namespace.get(name, 0)))
    console.print(table)


@cli.command("purge")
@click.argument("target")
@click.option("--yes", is_flag=True, help="Don't ask for confirmation")
def purge(target: str, yes: bool) -> None:
    """Delete every record in TARGET (a store name, or 'all' for every message store)."""
    if not yes:
        click.confirm(f"Delete every record in {target}?", abort=True)
    _run_async(_purge(target))


async def _purge(target: str) -> None:
    from casemail.db.store import purge_store

    deps = await _init_cli_deps()
    if target == "all":
        stores = list(deps.stores.message_stores().values())
    else:
        try:
            stores = [deps.stores.resolve(target)]
        except KeyError as e:
            console.print(f"[red]{e.args[0]}[/red]")
            sys.exit(1)

    for store in stores:
        deleted = await purge_store(store)
        console.print(f"  {store.name}: {deleted} deleted")


@cli.command("status")
def status() -> None:
    """Show the last run summary and the current watermark."""
    _run_async(_status())


async def _status() -> None:
    deps = await _init_cli_deps()
    watermark = await deps.stores.state.get(deps.config.pipeline.watermark_key)
    raw_summary = await deps.stores.state.get(deps.config.pipeline.summary_key)

    console.print(f"Watermark: [cyan]{watermark or '-'}[/cyan]")
    if raw_summary is None:
        console.print("No pipeline run recorded yet")
        return
    console.print_json(raw_summary)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
