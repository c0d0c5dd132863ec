"""
Integration tests for the ingestion pipeline.

Runs full scan -> diff -> parse -> write -> query cycles against temporary
project and cache directories.
"""

import json
import os
from datetime import date, timezone
from unittest.mock import patch

import pytest

from ccost.config.loader import CcostConfig
from ccost.core.pipeline import history, project_report, run_ingestion, today_summary
from ccost.core.pricing import BUILTIN_PRICING_TABLE
from ccost.storage.db import CacheWriteError
from ccost.storage.repository import UsageCache, open_cache


def _line(message_id, request_id, timestamp="2025-01-01T10:00:00.000Z",
          model="claude-sonnet-4-6", input_tokens=1000, output_tokens=500):
    return json.dumps({
        "timestamp": timestamp,
        "requestId": request_id,
        "message": {
            "id": message_id,
            "model": model,
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    })


def _write_log(path, lines, mtime_ms=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    if mtime_ms is not None:
        ns = mtime_ms * 1_000_000
        os.utime(path, ns=(ns, ns))


@pytest.fixture
def config(tmp_path):
    return CcostConfig(projects_dir=tmp_path / "projects", cache_dir=tmp_path / "cache")


def _run(config, **kwargs):
    kwargs.setdefault("pricing", BUILTIN_PRICING_TABLE)
    return run_ingestion(config=config, tz=timezone.utc, **kwargs)


class TestRunIngestion:
    """Test full pipeline runs."""

    def test_scenario_cost(self, config):
        """The reference line costs $0.0105."""
        _write_log(config.projects_dir / "proj" / "s1.jsonl", [_line("m1", "r1")])

        result = _run(config)

        assert len(result.summaries) == 1
        summary = result.summaries[0]
        assert summary.date == "2025-01-01"
        assert summary.input_tokens == 1000
        assert summary.output_tokens == 500
        assert summary.sessions == 1
        assert summary.cost == pytest.approx(0.0105)
        assert result.files_processed_count == 1
        assert result.files_cached_count == 0

    def test_second_run_is_idempotent(self, config):
        """No filesystem changes means no work and identical output."""
        _write_log(config.projects_dir / "proj" / "s1.jsonl", [_line("m1", "r1")])
        _write_log(config.projects_dir / "proj" / "s2.jsonl", [_line("m2", "r2")])

        first = _run(config)
        with patch.object(UsageCache, "write_results") as write:
            second = _run(config)

        write.assert_not_called()
        assert second.files_processed_count == 0
        assert second.files_cached_count == 2
        assert second.summaries == first.summaries

    def test_changed_file_replaces_its_rows(self, config):
        """Growing a file re-ingests it without double counting."""
        log = config.projects_dir / "proj" / "s1.jsonl"
        _write_log(log, [_line("m1", "r1")], mtime_ms=1_700_000_000_000)
        _run(config)

        _write_log(log, [_line("m1", "r1"), _line("m2", "r2")], mtime_ms=1_700_000_001_000)
        result = _run(config)

        assert result.files_processed_count == 1
        assert result.summaries[0].input_tokens == 2000

    def test_removed_file_then_readded(self, config):
        """A deleted file leaves no trace; recreating it counts as added."""
        keep = config.projects_dir / "proj" / "keep.jsonl"
        gone = config.projects_dir / "proj" / "gone.jsonl"
        _write_log(keep, [_line("m1", "r1")])
        _write_log(gone, [_line("m2", "r2", input_tokens=7)])
        _run(config)

        os.remove(gone)
        result = _run(config)
        assert result.files_removed_count == 1
        assert result.summaries[0].input_tokens == 1000
        with open_cache(config.db_path) as cache:
            assert str(gone) not in cache.get_cached_file_metadata()
            assert all(r.file_path != str(gone) for r in cache.fetch_usage_records())

        _write_log(gone, [_line("m2", "r2", input_tokens=7)])
        result = _run(config)
        assert result.files_processed_count == 1
        assert result.files_cached_count == 1
        assert result.summaries[0].input_tokens == 1007

    def test_cross_file_duplicates_counted_once(self, config):
        """A response logged in two session files counts once."""
        _write_log(config.projects_dir / "proj" / "a.jsonl", [_line("m1", "r1")])
        _write_log(config.projects_dir / "proj" / "b.jsonl", [_line("m1", "r1"), _line("m1", "r1")])

        result = _run(config)

        assert result.summaries[0].input_tokens == 1000
        assert result.summaries[0].sessions == 1

    def test_force_rebuild_reparses_everything(self, config):
        _write_log(config.projects_dir / "proj" / "a.jsonl", [_line("m1", "r1")])
        first = _run(config)

        rebuilt = _run(config, force_rebuild=True)

        assert rebuilt.files_processed_count == 1
        assert rebuilt.files_cached_count == 0
        assert rebuilt.summaries == first.summaries

    def test_filters_and_ordering(self, config):
        _write_log(config.projects_dir / "-Users-a-app" / "a.jsonl", [
            _line("m1", "r1", timestamp="2025-01-03T10:00:00Z"),
            _line("m2", "r2", timestamp="2025-01-01T10:00:00Z"),
        ])
        _write_log(config.projects_dir / "-Users-a-lib" / "b.jsonl", [
            _line("m3", "r3", timestamp="2025-01-02T10:00:00Z"),
        ])

        everything = _run(config)
        since = _run(config, since="2025-01-02")
        lib = _run(config, project="lib")

        assert [s.date for s in everything.summaries] == ["2025-01-01", "2025-01-02", "2025-01-03"]
        assert all(s.date >= "2025-01-02" for s in since.summaries)
        assert [s.date for s in lib.summaries] == ["2025-01-02"]

    def test_unknown_model_warnings(self, config):
        _write_log(config.projects_dir / "proj" / "a.jsonl", [
            _line("m1", "r1", model="claude-future-9"),
            _line("m2", "r2", model="some-other-model"),
        ])

        result = _run(config)

        assert result.unknown_model_warnings == ["claude-future-9"]
        assert result.summaries[0].cost == pytest.approx(2 * 0.0105)

    def test_empty_projects_dir(self, config):
        result = _run(config)
        assert result.summaries == []
        assert result.files_processed_count == 0

    def test_write_failure_keeps_previous_state(self, config):
        """A rolled-back write propagates and the old cache stays authoritative."""
        _write_log(config.projects_dir / "proj" / "a.jsonl", [_line("m1", "r1")])
        first = _run(config)
        _write_log(config.projects_dir / "proj" / "b.jsonl", [_line("m2", "r2")])

        with patch.object(UsageCache, "write_results", side_effect=CacheWriteError("disk full")):
            with pytest.raises(CacheWriteError):
                _run(config)

        with open_cache(config.db_path) as cache:
            assert len(cache.get_cached_file_metadata()) == 1
        retry = _run(config)
        assert retry.files_processed_count == 1
        assert retry.summaries[0].input_tokens == first.summaries[0].input_tokens + 1000

    @pytest.mark.parametrize("bad_line", [
        '{"usage":' + "[" * 100000,
        _line("m9", "r9", timestamp="0001-01-01T00:00:00+14:00"),
        _line("m9", "r9", input_tokens=99999999999999999999),
    ])
    def test_hostile_line_does_not_wedge_cache(self, config, bad_line):
        """A file with an unusable line is ingested and later runs stay cached."""
        _write_log(config.projects_dir / "proj" / "good.jsonl", [_line("m1", "r1")])
        _write_log(config.projects_dir / "proj" / "bad.jsonl", [bad_line])

        first = _run(config)
        second = _run(config)

        assert first.summaries[0].input_tokens == 1000
        assert first.files_processed_count == 2
        assert second.files_processed_count == 0
        assert second.files_cached_count == 2
        assert second.summaries == first.summaries

    def test_parallel_workers_same_result(self, tmp_path):
        projects = tmp_path / "projects"
        for i in range(5):
            _write_log(projects / "proj" / f"s{i}.jsonl", [_line(f"m{j}", f"r{j}") for j in range(i, i + 3)])

        sequential = _run(CcostConfig(projects_dir=projects, cache_dir=tmp_path / "c1", workers=1))
        parallel = _run(CcostConfig(projects_dir=projects, cache_dir=tmp_path / "c2", workers=4))

        assert sequential.summaries == parallel.summaries


class TestConvenienceQueries:
    """Test today/history helpers used by refresh loops."""

    def test_today_summary(self, config):
        _write_log(config.projects_dir / "proj" / "a.jsonl", [
            _line("m1", "r1", timestamp="2025-03-10T08:00:00Z"),
            _line("m2", "r2", timestamp="2025-03-09T08:00:00Z"),
        ])
        summary = today_summary(config=config, pricing=BUILTIN_PRICING_TABLE,
                                today=date(2025, 3, 10), tz=timezone.utc)
        assert summary.date == "2025-03-10"
        assert summary.input_tokens == 1000

    def test_today_summary_without_usage(self, config):
        summary = today_summary(config=config, pricing=BUILTIN_PRICING_TABLE,
                                today=date(2025, 3, 10), tz=timezone.utc)
        assert summary.date == "2025-03-10"
        assert summary.cost == 0
        assert summary.sessions == 0

    def test_history_window(self, config):
        _write_log(config.projects_dir / "proj" / "a.jsonl", [
            _line("m1", "r1", timestamp="2025-03-10T08:00:00Z"),
            _line("m2", "r2", timestamp="2025-03-04T08:00:00Z"),
            _line("m3", "r3", timestamp="2025-03-03T08:00:00Z"),
        ])
        result = history(days=7, config=config, pricing=BUILTIN_PRICING_TABLE,
                         today=date(2025, 3, 10), tz=timezone.utc)
        assert [s.date for s in result.summaries] == ["2025-03-04", "2025-03-10"]

    def test_history_rejects_non_positive_days(self, config):
        with pytest.raises(ValueError):
            history(days=0, config=config)


class TestProjectReport:
    """Test per-project reporting on a refreshed cache."""

    def test_refreshes_and_groups_by_project(self, config):
        _write_log(config.projects_dir / "-Users-a-app" / "a.jsonl", [
            _line("m1", "r1"),
            _line("m2", "r2", model="claude-future-9"),
        ])
        _write_log(config.projects_dir / "-Users-a-lib" / "b.jsonl", [
            _line("m3", "r3", input_tokens=10, output_tokens=0),
        ])

        report = project_report(config=config, pricing=BUILTIN_PRICING_TABLE, tz=timezone.utc)

        assert [p.project_dir for p in report.summaries] == ["-Users-a-app", "-Users-a-lib"]
        assert report.summaries[0].input_tokens == 2000
        assert report.unknown_models == ["claude-future-9"]
        with open_cache(config.db_path) as cache:
            assert cache.count_files() == 2

    def test_date_bounds(self, config):
        _write_log(config.projects_dir / "proj" / "a.jsonl", [
            _line("m1", "r1", timestamp="2025-01-01T10:00:00Z"),
            _line("m2", "r2", timestamp="2025-01-05T10:00:00Z", input_tokens=7),
        ])

        report = project_report(config=config, pricing=BUILTIN_PRICING_TABLE,
                                since="2025-01-02", tz=timezone.utc)

        assert [p.input_tokens for p in report.summaries] == [7]
