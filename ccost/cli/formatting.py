"""
Output formatting for the CLI.

Renders summaries as rich tables or JSON.
"""

import json
from datetime import datetime
from typing import List, Sequence

from rich.table import Table

from ccost.core.projects import decode_project_dir, project_name
from ccost.storage.models import DailySummary, ProjectSummary


def format_tokens(n: int) -> str:
    """Abbreviate a token count: 1234 -> 1.2K, 2500000 -> 2.5M."""
    if n >= 1_000_000_000:
        return f"{n / 1_000_000_000:.1f}B"
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    if n >= 1_000:
        return f"{n / 1_000:.1f}K"
    return str(n)


def format_cost(amount: float) -> str:
    return f"${amount:,.2f}"


def normalize_date(value: str) -> str:
    """Accept YYYYMMDD as well as YYYY-MM-DD, returning YYYY-MM-DD.

    Raises:
        ValueError: If the value is not a valid date in either form
    """
    normalized = value
    if len(value) == 8 and "-" not in value:
        normalized = f"{value[:4]}-{value[4:6]}-{value[6:]}"

    error = ValueError(f"Invalid date '{value}': expected YYYYMMDD or YYYY-MM-DD")
    # strptime alone would also accept unpadded fields like 2025-1-5
    if len(normalized) != 10:
        raise error
    try:
        datetime.strptime(normalized, "%Y-%m-%d")
    except ValueError:
        raise error from None
    return normalized


def total_summary(summaries: Sequence[DailySummary]) -> DailySummary:
    return DailySummary(
        date="TOTAL",
        cost=sum(s.cost for s in summaries),
        input_tokens=sum(s.input_tokens for s in summaries),
        output_tokens=sum(s.output_tokens for s in summaries),
        cache_creation_input_tokens=sum(s.cache_creation_input_tokens for s in summaries),
        cache_read_input_tokens=sum(s.cache_read_input_tokens for s in summaries),
        sessions=sum(s.sessions for s in summaries),
    )


def _summary_cells(s: DailySummary) -> List[str]:
    return [
        s.date,
        format_tokens(s.input_tokens),
        format_tokens(s.output_tokens),
        format_tokens(s.cache_creation_input_tokens),
        format_tokens(s.cache_read_input_tokens),
        format_cost(s.cost),
        str(s.sessions),
    ]


def build_daily_table(summaries: Sequence[DailySummary]) -> Table:
    """Daily usage table with a TOTAL footer row."""
    table = Table(show_footer=False, header_style="dim")
    table.add_column("Date", style="white")
    table.add_column("Input", justify="right", style="cyan")
    table.add_column("Output", justify="right", style="cyan")
    table.add_column("Cache W", justify="right", style="yellow")
    table.add_column("Cache R", justify="right", style="yellow")
    table.add_column("Cost", justify="right", style="bold green")
    table.add_column("Sessions", justify="right", style="dim")

    for s in summaries:
        table.add_row(*_summary_cells(s))

    table.add_section()
    table.add_row(*_summary_cells(total_summary(summaries)), style="bold")
    return table


def build_project_table(projects: Sequence[ProjectSummary]) -> Table:
    table = Table(header_style="dim")
    table.add_column("Project", style="white")
    table.add_column("Path", style="dim")
    table.add_column("Input", justify="right", style="cyan")
    table.add_column("Output", justify="right", style="cyan")
    table.add_column("Cost", justify="right", style="bold green")
    table.add_column("Sessions", justify="right", style="dim")

    for p in projects:
        table.add_row(
            project_name(p.project_dir),
            decode_project_dir(p.project_dir),
            format_tokens(p.input_tokens),
            format_tokens(p.output_tokens),
            format_cost(p.cost),
            str(p.sessions),
        )
    return table


def stats_line(processed: int, cached: int, elapsed_ms: int) -> str:
    if processed > 0:
        message = f"{processed} files processed ({cached} cached)"
    else:
        message = f"{cached} files (all cached)"
    return f"{message} in {elapsed_ms}ms"


def summaries_to_json(summaries: Sequence[DailySummary]) -> str:
    return json.dumps([s.to_dict() for s in summaries], indent=2, sort_keys=True)
