"""
Data models for storage layer.

Defines cached file metadata, aggregated usage rows and derived summaries.
"""

from dataclasses import dataclass, field
from typing import List, NamedTuple

from ccost.core.token_counter import TokenUsage


@dataclass(frozen=True)
class FileRecord:
    """Last-ingested state of one usage-log file.

    ``(mtime_ms, size)`` is the only staleness signal; contents are never
    hashed.
    """
    file_path: str
    mtime_ms: int
    size: int
    session_id: str
    project_dir: str


class CachedFileMeta(NamedTuple):
    """Staleness signal stored for a cached file."""
    mtime_ms: int
    size: int


@dataclass(frozen=True)
class UsageRecord:
    """Token totals of one file for one (date, model) pair."""
    file_path: str
    date: str
    model: str
    session_id: str
    project_dir: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    message_count: int = 0

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_input_tokens=self.cache_creation_input_tokens,
            cache_read_input_tokens=self.cache_read_input_tokens,
        )


@dataclass(frozen=True)
class DailySummary:
    """Cost and token usage for one calendar date. Derived, never stored."""
    date: str
    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    sessions: int = 0

    def to_dict(self) -> dict:
        """Serialize with the camelCase keys used by the JSON output."""
        return {
            "date": self.date,
            "cost": self.cost,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreationInputTokens": self.cache_creation_input_tokens,
            "cacheReadInputTokens": self.cache_read_input_tokens,
            "sessions": self.sessions,
        }


@dataclass(frozen=True)
class ProjectSummary:
    """Cost and token usage for one project directory."""
    project_dir: str
    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    sessions: int = 0


@dataclass(frozen=True)
class SummaryReport:
    """Query result together with the unknown models priced by fallback."""
    summaries: List = field(default_factory=list)
    unknown_models: List[str] = field(default_factory=list)
