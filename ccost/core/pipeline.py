"""
Ingestion pipeline.

Runs one refresh cycle: scan, diff against the cache, parse new and changed
files, write the results, then query daily summaries.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from typing import List, Optional

from ccost.config.loader import CcostConfig, load_config
from ccost.storage.models import DailySummary, SummaryReport
from ccost.storage.repository import UsageCache, open_cache

from .parser import parse_files
from .pricing import PricingTable, load_pricing_table
from .scanner import DiffResult, FileScanner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionResult:
    """Outcome of one pipeline run."""
    summaries: List[DailySummary] = field(default_factory=list)
    files_processed_count: int = 0
    files_cached_count: int = 0
    files_removed_count: int = 0
    unknown_model_warnings: List[str] = field(default_factory=list)
    elapsed_ms: int = 0


def refresh_cache(
    cache: UsageCache,
    config: CcostConfig,
    force_rebuild: bool = False,
    tz: Optional[tzinfo] = None,
) -> DiffResult:
    """Bring an open cache up to date with the log files on disk.

    Only added and changed files are parsed; the cache is written only when
    something was added, changed or removed.

    Args:
        cache: Open usage cache
        config: Settings naming the projects root and worker count
        force_rebuild: Clear the cache first so every file is re-ingested
        tz: Timezone used to derive calendar dates

    Returns:
        DiffResult describing what this refresh found

    Raises:
        CacheWriteError: If the cache update was rolled back
    """
    if force_rebuild:
        cache.clear()

    scanner = FileScanner(config.projects_dir)
    diff = scanner.diff_files(scanner.discover_files(), cache.get_cached_file_metadata())

    files_to_process = diff.to_process
    records = parse_files(files_to_process, seen=set(), tz=tz, max_workers=config.workers)

    if diff.has_changes:
        cache.write_results(files_to_process, records, diff.removed)
    return diff


def run_ingestion(
    force_rebuild: bool = False,
    config: Optional[CcostConfig] = None,
    pricing: Optional[PricingTable] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    project: Optional[str] = None,
    tz: Optional[tzinfo] = None,
) -> IngestionResult:
    """Bring the cache up to date and return daily summaries.

    The cache connection is held only for the duration of the run. See
    :func:`refresh_cache` for what gets parsed and written.

    Args:
        force_rebuild: Clear the cache first so every file is re-ingested
        config: Settings; loaded from file/environment when omitted
        pricing: Pricing snapshot; built from the override file when omitted
        since: Inclusive lower date bound for the summaries
        until: Inclusive upper date bound for the summaries
        project: Project substring filter for the summaries
        tz: Timezone used to derive calendar dates

    Returns:
        IngestionResult with summaries, file counts and unknown models

    Raises:
        CacheStoreError: If the cache cannot be opened
        CacheWriteError: If the cache update was rolled back
    """
    start = time.monotonic()
    if config is None:
        config = load_config()
    if pricing is None:
        pricing = load_pricing_table(config.pricing_file)

    with open_cache(config.db_path) as cache:
        diff = refresh_cache(cache, config, force_rebuild=force_rebuild, tz=tz)
        report = cache.query_daily_summaries(pricing, since=since, until=until, project=project)

    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "Ingestion finished: %d added, %d changed, %d removed, %d unchanged in %dms",
        len(diff.added), len(diff.changed), len(diff.removed), len(diff.unchanged), elapsed_ms
    )

    return IngestionResult(
        summaries=report.summaries,
        files_processed_count=len(diff.to_process),
        files_cached_count=len(diff.unchanged),
        files_removed_count=len(diff.removed),
        unknown_model_warnings=report.unknown_models,
        elapsed_ms=elapsed_ms,
    )


def _current_date(tz: Optional[tzinfo]) -> date:
    return datetime.now(tz).date()


def today_summary(
    config: Optional[CcostConfig] = None,
    pricing: Optional[PricingTable] = None,
    today: Optional[date] = None,
    tz: Optional[tzinfo] = None,
) -> DailySummary:
    """Refresh the cache and return today's summary (zeros when idle)."""
    day = (today or _current_date(tz)).isoformat()
    result = run_ingestion(config=config, pricing=pricing, since=day, until=day, tz=tz)
    if result.summaries:
        return result.summaries[0]
    return DailySummary(date=day)


def history(
    days: int = 30,
    config: Optional[CcostConfig] = None,
    pricing: Optional[PricingTable] = None,
    today: Optional[date] = None,
    tz: Optional[tzinfo] = None,
) -> IngestionResult:
    """Refresh the cache and return the last ``days`` dates including today."""
    if days < 1:
        raise ValueError("days must be >= 1")
    end = today or _current_date(tz)
    start = end - timedelta(days=days - 1)
    return run_ingestion(
        config=config, pricing=pricing, since=start.isoformat(), until=end.isoformat(), tz=tz
    )


def project_report(
    config: Optional[CcostConfig] = None,
    pricing: Optional[PricingTable] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    tz: Optional[tzinfo] = None,
) -> SummaryReport:
    """Refresh the cache and return per-project summaries, most expensive first."""
    if config is None:
        config = load_config()
    if pricing is None:
        pricing = load_pricing_table(config.pricing_file)

    with open_cache(config.db_path) as cache:
        refresh_cache(cache, config, tz=tz)
        return cache.query_project_summaries(pricing, since=since, until=until)
