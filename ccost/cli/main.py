"""
CLI interface for ccost.

Provides command-line access to the usage cache and cost reports.
"""

import logging
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ccost.cli.formatting import (
    build_daily_table,
    build_project_table,
    format_cost,
    format_tokens,
    normalize_date,
    stats_line,
    summaries_to_json,
)
from ccost.config.loader import CcostConfig, load_config
from ccost.core.pipeline import project_report, run_ingestion, today_summary
from ccost.core.pricing import FALLBACK_MODEL, load_pricing_table
from ccost.storage.db import CacheStoreError, CacheWriteError
from ccost.storage.repository import open_cache

app = typer.Typer(help="Fast Claude Code usage and cost tracker.")
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Failures reported as a one-line error instead of a traceback
_EXPECTED_ERRORS = (CacheStoreError, CacheWriteError, FileNotFoundError, ValueError, yaml.YAMLError)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _load_config(ctx: typer.Context) -> CcostConfig:
    config_path = (ctx.obj or {}).get("config_path")
    return load_config(config_path)


def _fail(error: Exception) -> None:
    err_console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


def _print_unknown_models(models) -> None:
    for model in models:
        err_console.print(
            f'[yellow]Warning: Unknown model "{escape(model)}" - using Sonnet pricing as fallback.[/]',
            highlight=False,
        )


def _run_report(
    ctx: typer.Context,
    since: Optional[str] = None,
    until: Optional[str] = None,
    project: Optional[str] = None,
    as_json: bool = False,
    rebuild: bool = False,
) -> None:
    try:
        config = _load_config(ctx)
        result = run_ingestion(
            force_rebuild=rebuild,
            config=config,
            since=normalize_date(since) if since else None,
            until=normalize_date(until) if until else None,
            project=project,
        )
    except _EXPECTED_ERRORS as e:
        _fail(e)

    if as_json:
        typer.echo(summaries_to_json(result.summaries))
    elif not result.summaries:
        console.print("[dim]No usage data found.[/]")
    else:
        console.print(build_daily_table(result.summaries))
        console.print(
            "[dim]  " + stats_line(result.files_processed_count, result.files_cached_count, result.elapsed_ms) + "[/]"
        )

    _print_unknown_models(result.unknown_model_warnings)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    ),
):
    """ccost - Claude Code usage tracker."""
    _configure_logging(verbose)
    ctx.obj = {"config_path": config_path}
    if ctx.invoked_subcommand is None:
        _run_report(ctx)


@app.command()
def report(
    ctx: typer.Context,
    since: Optional[str] = typer.Option(
        None,
        "--since",
        "-s",
        help="Show usage from this date (YYYYMMDD or YYYY-MM-DD)"
    ),
    until: Optional[str] = typer.Option(
        None,
        "--until",
        "-u",
        help="Show usage until this date (YYYYMMDD or YYYY-MM-DD)"
    ),
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Filter by project name (partial match)"
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON"
    ),
    rebuild: bool = typer.Option(
        False,
        "--rebuild",
        help="Force full re-parse (ignore cache)"
    ),
):
    """
    Show daily cost and token usage.

    Only log files that changed since the last run are parsed; everything
    else comes from the cache.
    """
    _run_report(ctx, since=since, until=until, project=project, as_json=as_json, rebuild=rebuild)


@app.command()
def today(ctx: typer.Context):
    """Show today's cost and token usage."""
    try:
        config = _load_config(ctx)
        summary = today_summary(config=config)
    except _EXPECTED_ERRORS as e:
        _fail(e)

    console.print(f"[bold]Today[/bold] ({summary.date})")
    console.print(f"Cost: [bold green]{format_cost(summary.cost)}[/]")
    console.print(f"Sessions: {summary.sessions}")
    console.print(
        f"Tokens: {format_tokens(summary.input_tokens)} in, "
        f"{format_tokens(summary.output_tokens)} out, "
        f"{format_tokens(summary.cache_creation_input_tokens)} cache write, "
        f"{format_tokens(summary.cache_read_input_tokens)} cache read"
    )


@app.command()
def projects(
    ctx: typer.Context,
    since: Optional[str] = typer.Option(None, "--since", "-s", help="Start date (YYYYMMDD or YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", "-u", help="End date (YYYYMMDD or YYYY-MM-DD)"),
):
    """Show cost per project, most expensive first."""
    try:
        config = _load_config(ctx)
        result = project_report(
            config=config,
            since=normalize_date(since) if since else None,
            until=normalize_date(until) if until else None,
        )
    except _EXPECTED_ERRORS as e:
        _fail(e)

    if not result.summaries:
        console.print("[dim]No usage data found.[/]")
    else:
        console.print(build_project_table(result.summaries))
    _print_unknown_models(result.unknown_models)


@app.command()
def pricing(ctx: typer.Context):
    """Show the effective model pricing (USD per million tokens)."""
    try:
        config = _load_config(ctx)
    except _EXPECTED_ERRORS as e:
        _fail(e)
    table_data = load_pricing_table(config.pricing_file)

    table = Table(header_style="dim")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cache W", justify="right")
    table.add_column("Cache R", justify="right")
    for model in sorted(table_data.prices):
        p = table_data.prices[model]
        name = f"{model} (fallback)" if model == FALLBACK_MODEL else model
        table.add_row(
            name,
            f"{p.input_per_million:g}",
            f"{p.output_per_million:g}",
            f"{p.cache_create_per_million:g}",
            f"{p.cache_read_per_million:g}",
        )
    console.print(table)


@app.command()
def clear(ctx: typer.Context):
    """Delete all cached data; the next report re-parses every file."""
    try:
        config = _load_config(ctx)
        with open_cache(config.db_path) as cache:
            cache.clear()
    except _EXPECTED_ERRORS as e:
        _fail(e)
    console.print("[green]✓[/] Cache cleared")


@app.command()
def status(ctx: typer.Context):
    """Show cache location and contents."""
    try:
        config = _load_config(ctx)
        with open_cache(config.db_path) as cache:
            file_count = cache.count_files()
    except _EXPECTED_ERRORS as e:
        _fail(e)
    console.print(f"Projects: {config.projects_dir}")
    console.print(f"Cache: {config.db_path}")
    console.print(f"Cached files: {file_count}")


if __name__ == "__main__":
    app()
