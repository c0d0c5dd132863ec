"""
Repository pattern for data access.

Handles the cached file manifest, aggregated usage rows and the
date/project queries computed from them.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ccost.core.pricing import PricingTable
from ccost.core.token_counter import TokenUsage

from .db import CacheStoreError, CacheWriteError, get_connection
from .models import (
    CachedFileMeta,
    DailySummary,
    FileRecord,
    ProjectSummary,
    SummaryReport,
    UsageRecord,
)

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS files (
        file_path TEXT PRIMARY KEY,
        mtime_ms INTEGER NOT NULL,
        size INTEGER NOT NULL,
        session_id TEXT NOT NULL,
        project_dir TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage (
        file_path TEXT NOT NULL,
        date TEXT NOT NULL,
        model TEXT NOT NULL,
        session_id TEXT NOT NULL,
        project_dir TEXT NOT NULL,
        input_tokens INTEGER DEFAULT 0,
        output_tokens INTEGER DEFAULT 0,
        cache_creation_input_tokens INTEGER DEFAULT 0,
        cache_read_input_tokens INTEGER DEFAULT 0,
        message_count INTEGER DEFAULT 0,
        PRIMARY KEY (file_path, date, model)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_date ON usage(date)",
)


def initialize_schema(conn: sqlite3.Connection) -> None:
    """Create the files and usage tables if they don't exist."""
    for statement in _SCHEMA:
        conn.execute(statement)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _build_filters(
    since: Optional[str] = None,
    until: Optional[str] = None,
    project: Optional[str] = None,
) -> Tuple[str, List[str]]:
    """Build the WHERE clause shared by the summary queries.

    Dates are YYYY-MM-DD strings, so lexicographic bounds are date bounds.
    """
    conditions = []
    params = []
    if since:
        conditions.append("date >= ?")
        params.append(since)
    if until:
        conditions.append("date <= ?")
        params.append(until)
    if project:
        conditions.append("project_dir LIKE ? ESCAPE '\\'")
        params.append(f"%{_escape_like(project)}%")

    where = " WHERE " + " AND ".join(conditions) if conditions else ""
    return where, params


class UsageCache:
    """Repository over the usage cache database.

    Wraps one open connection; use :func:`open_cache` to get an instance
    whose connection is closed on every exit path.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one all-or-nothing write transaction."""
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise CacheWriteError(f"Could not start cache transaction: {e}") from e
        try:
            yield self.conn
            self.conn.execute("COMMIT")
        except Exception as e:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            if isinstance(e, (sqlite3.Error, OverflowError)):
                raise CacheWriteError(f"Cache update rolled back: {e}") from e
            raise

    def get_cached_file_metadata(self) -> Dict[str, CachedFileMeta]:
        """Get the staleness signal of every cached file.

        Returns:
            Mapping of file path to its cached (mtime_ms, size)
        """
        cursor = self.conn.execute("SELECT file_path, mtime_ms, size FROM files")
        return {row[0]: CachedFileMeta(mtime_ms=row[1], size=row[2]) for row in cursor.fetchall()}

    def count_files(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]

    def write_results(
        self,
        files_processed: Sequence[FileRecord],
        usage_records: Sequence[UsageRecord],
        removed_paths: Sequence[str] = (),
    ) -> None:
        """Apply one ingestion run's results atomically.

        Rows for removed files and the previous rows of every processed file
        are deleted before the new file and usage rows are inserted, all in a
        single transaction. A failure at any step rolls everything back, so
        the cache never holds usage rows without their file row or a file
        row next to stale usage rows.

        Args:
            files_processed: Files that were (re)parsed this run
            usage_records: Aggregated rows produced from those files
            removed_paths: Cached paths no longer present on disk

        Raises:
            CacheWriteError: If the transaction failed and was rolled back
        """
        stale_paths = [(path,) for path in removed_paths]
        stale_paths.extend((f.file_path,) for f in files_processed)

        with self._transaction() as conn:
            conn.executemany("DELETE FROM files WHERE file_path = ?", stale_paths)
            conn.executemany("DELETE FROM usage WHERE file_path = ?", stale_paths)
            conn.executemany("""
                INSERT INTO files (file_path, mtime_ms, size, session_id, project_dir)
                VALUES (?, ?, ?, ?, ?)
            """, [
                (f.file_path, f.mtime_ms, f.size, f.session_id, f.project_dir)
                for f in files_processed
            ])
            conn.executemany("""
                INSERT INTO usage
                (file_path, date, model, session_id, project_dir, input_tokens,
                 output_tokens, cache_creation_input_tokens, cache_read_input_tokens,
                 message_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    r.file_path,
                    r.date,
                    r.model,
                    r.session_id,
                    r.project_dir,
                    r.input_tokens,
                    r.output_tokens,
                    r.cache_creation_input_tokens,
                    r.cache_read_input_tokens,
                    r.message_count,
                )
                for r in usage_records
            ])

        logger.debug(
            "Cache updated: %d files written, %d usage rows, %d files removed",
            len(files_processed), len(usage_records), len(removed_paths)
        )

    def fetch_usage_records(self, file_path: Optional[str] = None) -> List[UsageRecord]:
        """Fetch stored usage rows, optionally for a single file."""
        query = """
            SELECT file_path, date, model, session_id, project_dir, input_tokens,
                   output_tokens, cache_creation_input_tokens, cache_read_input_tokens,
                   message_count
            FROM usage
        """
        params = []
        if file_path is not None:
            query += " WHERE file_path = ?"
            params.append(file_path)
        query += " ORDER BY file_path, date, model"

        cursor = self.conn.execute(query, params)
        return [UsageRecord(*row) for row in cursor.fetchall()]

    def query_daily_summaries(
        self,
        pricing: PricingTable,
        since: Optional[str] = None,
        until: Optional[str] = None,
        project: Optional[str] = None,
    ) -> SummaryReport:
        """Compute per-date cost and token totals.

        Usage is grouped by (date, model) so each model is priced with its
        own rates, then summed per date. Session counts are a separate
        distinct count per date, so a session using two models counts once.

        Args:
            pricing: Pricing snapshot used to cost each model
            since: Inclusive lower date bound (YYYY-MM-DD)
            until: Inclusive upper date bound (YYYY-MM-DD)
            project: Substring matched against the project directory

        Returns:
            SummaryReport with DailySummary rows ascending by date and the
            unknown models that were priced by fallback
        """
        where, params = _build_filters(since, until, project)

        cursor = self.conn.execute(f"""
            SELECT date, model,
                   SUM(input_tokens), SUM(output_tokens),
                   SUM(cache_creation_input_tokens), SUM(cache_read_input_tokens)
            FROM usage{where}
            GROUP BY date, model
        """, params)

        totals: Dict[str, Tuple[float, TokenUsage]] = {}
        unknown_models = set()
        for date, model, input_tokens, output_tokens, cache_create, cache_read in cursor.fetchall():
            usage = TokenUsage(
                input_tokens=input_tokens or 0,
                output_tokens=output_tokens or 0,
                cache_creation_input_tokens=cache_create or 0,
                cache_read_input_tokens=cache_read or 0,
            )
            lookup = pricing.lookup(model)
            if lookup.should_warn:
                unknown_models.add(model)
            cost = lookup.cost(usage)

            prev_cost, prev_usage = totals.get(date, (0.0, TokenUsage()))
            totals[date] = (prev_cost + cost, prev_usage + usage)

        cursor = self.conn.execute(f"""
            SELECT date, COUNT(DISTINCT session_id)
            FROM usage{where}
            GROUP BY date
        """, params)
        sessions = dict(cursor.fetchall())

        summaries = [
            DailySummary(
                date=date,
                cost=cost,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cache_creation_input_tokens=usage.cache_creation_input_tokens,
                cache_read_input_tokens=usage.cache_read_input_tokens,
                sessions=sessions.get(date, 0),
            )
            for date, (cost, usage) in sorted(totals.items())
        ]
        return SummaryReport(summaries=summaries, unknown_models=sorted(unknown_models))

    def query_project_summaries(
        self,
        pricing: PricingTable,
        since: Optional[str] = None,
        until: Optional[str] = None,
    ) -> SummaryReport:
        """Compute cost and token totals per project directory.

        Returns:
            SummaryReport with ProjectSummary rows, most expensive first
        """
        where, params = _build_filters(since, until)

        cursor = self.conn.execute(f"""
            SELECT project_dir, model,
                   SUM(input_tokens), SUM(output_tokens),
                   SUM(cache_creation_input_tokens), SUM(cache_read_input_tokens)
            FROM usage{where}
            GROUP BY project_dir, model
        """, params)

        totals: Dict[str, Tuple[float, TokenUsage]] = {}
        unknown_models = set()
        for project_dir, model, input_tokens, output_tokens, cache_create, cache_read in cursor.fetchall():
            usage = TokenUsage(input_tokens or 0, output_tokens or 0, cache_create or 0, cache_read or 0)
            lookup = pricing.lookup(model)
            if lookup.should_warn:
                unknown_models.add(model)
            prev_cost, prev_usage = totals.get(project_dir, (0.0, TokenUsage()))
            totals[project_dir] = (prev_cost + lookup.cost(usage), prev_usage + usage)

        cursor = self.conn.execute(f"""
            SELECT project_dir, COUNT(DISTINCT session_id)
            FROM usage{where}
            GROUP BY project_dir
        """, params)
        sessions = dict(cursor.fetchall())

        summaries = [
            ProjectSummary(
                project_dir=project_dir,
                cost=cost,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cache_creation_input_tokens=usage.cache_creation_input_tokens,
                cache_read_input_tokens=usage.cache_read_input_tokens,
                sessions=sessions.get(project_dir, 0),
            )
            for project_dir, (cost, usage) in totals.items()
        ]
        summaries.sort(key=lambda s: (-s.cost, s.project_dir))
        return SummaryReport(summaries=summaries, unknown_models=sorted(unknown_models))

    def clear(self) -> None:
        """Delete every cached file and usage row."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM files")
            conn.execute("DELETE FROM usage")
        logger.info("Cache cleared")

    def close(self) -> None:
        self.conn.close()


@contextmanager
def open_cache(db_path: Union[str, Path]) -> Iterator[UsageCache]:
    """Open the usage cache for the duration of a block.

    The schema is created on first use and the connection is closed on
    every exit path.

    Raises:
        CacheStoreError: If the cache cannot be opened or initialized
    """
    cache = UsageCache(get_connection(db_path))
    try:
        try:
            initialize_schema(cache.conn)
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cannot initialize cache database {db_path}: {e}") from e
        yield cache
    finally:
        cache.close()
