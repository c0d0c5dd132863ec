"""
Usage-log parsing.

Streams session log files, extracts usage events, deduplicates them across
files and aggregates token counts per (date, model).
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from ccost.storage.models import FileRecord, UsageRecord

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

# Cheap substring check before a line is JSON-decoded
USAGE_MARKER = '"usage"'

# Model name written for locally generated messages, never billed
SYNTHETIC_MODEL = "<synthetic>"

# Largest count that fits a SQLite INTEGER column
MAX_TOKEN_COUNT = 2**63 - 1


def _token_count(usage: Mapping[str, Any], key: str) -> int:
    value = usage.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or not 0 <= value <= MAX_TOKEN_COUNT:
        return 0
    return value


def _string_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


@dataclass(frozen=True)
class UsageEntry:
    """One logged API response's token consumption.

    Every field has a default so loosely shaped lines decode without
    raising; lines that are not usage events decode to ``None``.
    """
    message_id: Optional[str] = None
    request_id: Optional[str] = None
    model: str = ""
    timestamp: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def dedup_key(self) -> Optional[str]:
        """Key identifying a unique API response, if both ids are present."""
        if self.message_id is None or self.request_id is None:
            return None
        return f"{self.message_id}:{self.request_id}"

    @classmethod
    def from_line(cls, line: str) -> Optional["UsageEntry"]:
        """Decode a log line, returning None for anything but a usage event."""
        if USAGE_MARKER not in line:
            return None
        try:
            parsed = json.loads(line)
        except (ValueError, RecursionError) as e:
            logger.debug("Skipping malformed log line: %s", e)
            return None
        if not isinstance(parsed, dict):
            return None

        message = parsed.get("message")
        if not isinstance(message, dict):
            return None
        usage = message.get("usage")
        if not isinstance(usage, dict) or "input_tokens" not in usage:
            return None

        return cls(
            message_id=_string_or_none(message.get("id")),
            request_id=_string_or_none(parsed.get("requestId")),
            model=_string_or_none(message.get("model")) or "",
            timestamp=_string_or_none(parsed.get("timestamp")) or "",
            usage=TokenUsage(
                input_tokens=_token_count(usage, "input_tokens"),
                output_tokens=_token_count(usage, "output_tokens"),
                cache_creation_input_tokens=_token_count(usage, "cache_creation_input_tokens"),
                cache_read_input_tokens=_token_count(usage, "cache_read_input_tokens"),
            ),
        )


def to_local_date(timestamp: str, tz: Optional[tzinfo] = None) -> Optional[str]:
    """Convert an ISO-8601 timestamp to a calendar date string.

    Accepts timestamps with or without fractional seconds, with a ``Z`` or
    numeric UTC offset. Timestamps without an offset are rejected.

    Args:
        timestamp: ISO-8601 timestamp from the log
        tz: Target timezone; the process local zone when omitted

    Returns:
        YYYY-MM-DD in the target zone, or None if unparseable
    """
    if not timestamp:
        return None
    value = timestamp.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        return None
    if moment.tzinfo is None:
        return None
    try:
        return moment.astimezone(tz).strftime("%Y-%m-%d")
    except (ValueError, OverflowError):
        return None


def read_entries(file: FileRecord) -> List[UsageEntry]:
    """Read every usage entry of one log file, in line order.

    An unreadable file (missing, permission denied, invalid UTF-8) yields
    no entries rather than a partial list.
    """
    entries = []
    try:
        with open(file.file_path, 'r', encoding='utf-8') as f:
            for line in f:
                if not line.strip():
                    continue
                entry = UsageEntry.from_line(line)
                if entry is not None:
                    entries.append(entry)
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Skipping unreadable log file %s: %s", file.file_path, e)
        return []
    return entries


def aggregate_entries(
    file: FileRecord,
    entries: Iterable[UsageEntry],
    seen: Set[str],
    tz: Optional[tzinfo] = None,
) -> List[UsageRecord]:
    """Aggregate one file's entries into UsageRecords keyed by (date, model).

    Dedup is first-write-wins across everything recorded in ``seen``: a
    duplicate's tokens are discarded entirely. A line claims its dedup key
    before its model and timestamp are checked.

    Args:
        file: File the entries came from
        entries: Entries in line order
        seen: Dedup keys already counted; updated in place
        tz: Timezone used to derive calendar dates

    Returns:
        One UsageRecord per (date, model) observed in the file
    """
    totals: Dict[Tuple[str, str], Tuple[TokenUsage, int]] = {}

    for entry in entries:
        key = entry.dedup_key
        if key is not None:
            if key in seen:
                continue
            seen.add(key)

        if not entry.model or entry.model == SYNTHETIC_MODEL:
            continue

        date = to_local_date(entry.timestamp, tz)
        if date is None:
            logger.debug("Skipping entry with bad timestamp %r in %s", entry.timestamp, file.file_path)
            continue

        usage, count = totals.get((date, entry.model), (TokenUsage(), 0))
        totals[(date, entry.model)] = (usage + entry.usage, count + 1)

    return [
        UsageRecord(
            file_path=file.file_path,
            date=date,
            model=model,
            session_id=file.session_id,
            project_dir=file.project_dir,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_input_tokens=usage.cache_creation_input_tokens,
            cache_read_input_tokens=usage.cache_read_input_tokens,
            message_count=count,
        )
        for (date, model), (usage, count) in totals.items()
    ]


def parse_file(
    file: FileRecord,
    seen: Optional[Set[str]] = None,
    tz: Optional[tzinfo] = None,
) -> List[UsageRecord]:
    """Parse a single log file into aggregated UsageRecords."""
    if seen is None:
        seen = set()
    return aggregate_entries(file, read_entries(file), seen, tz)


def parse_files(
    files: List[FileRecord],
    seen: Optional[Set[str]] = None,
    tz: Optional[tzinfo] = None,
    max_workers: int = 1,
) -> List[UsageRecord]:
    """Parse a batch of log files with dedup shared across the batch.

    Files may be read and decoded on a thread pool, but dedup and
    aggregation are always applied in the order ``files`` is given, so the
    result does not depend on ``max_workers``.

    Args:
        files: Files to parse, in dedup priority order
        seen: Caller-owned dedup set; a fresh one is used when omitted
        tz: Timezone used to derive calendar dates
        max_workers: Threads used to read files

    Returns:
        UsageRecords for all files
    """
    if seen is None:
        seen = set()

    if max_workers > 1 and len(files) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            per_file = list(executor.map(read_entries, files))
    else:
        per_file = [read_entries(file) for file in files]

    records = []
    for file, entries in zip(files, per_file):
        records.extend(aggregate_entries(file, entries, seen, tz))

    logger.debug("Parsed %d files into %d usage records", len(files), len(records))
    return records
