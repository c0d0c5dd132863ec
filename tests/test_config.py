"""
Unit tests for configuration loading and validation.

Tests strict validation, defaults and environment overrides.
"""

import os
import tempfile
from pathlib import Path

import pytest
import yaml

from ccost.config.loader import (
    ENV_CACHE_DIR,
    ENV_PROJECTS_DIR,
    ENV_WORKERS,
    CcostConfig,
    load_config,
)


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Point HOME at an empty directory and clear ccost variables."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in (ENV_PROJECTS_DIR, ENV_CACHE_DIR, ENV_WORKERS):
        monkeypatch.delenv(name, raising=False)
    return tmp_path / "home"


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            if isinstance(config_data, str):
                f.write(config_data)
            else:
                yaml.dump(config_data, f)
        return config_path

    def test_defaults_without_config_file(self, isolated_home):
        """Test that defaults apply when no config file exists."""
        config = load_config()

        assert config.projects_dir == isolated_home / ".claude" / "projects"
        assert config.cache_dir == isolated_home / ".cache" / "ccost"
        assert config.workers == 1
        assert config.db_path == isolated_home / ".cache" / "ccost" / "cache.db"
        assert config.pricing_file == isolated_home / ".cache" / "ccost" / "pricing.json"

    def test_default_config_file_is_read(self, isolated_home):
        """Test that ~/.config/ccost/config.yaml is picked up."""
        path = isolated_home / ".config" / "ccost" / "config.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("workers: 3\n", encoding="utf-8")

        assert load_config().workers == 3

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "projects_dir": "/data/projects",
            "cache_dir": "~/cache",
            "workers": 4,
        })
        config = load_config(config_path)

        assert config.projects_dir == Path("/data/projects")
        assert config.cache_dir == Path("~/cache").expanduser()
        assert config.workers == 4

    def test_empty_file_uses_defaults(self, isolated_home):
        """Test that an empty configuration file means defaults."""
        config = load_config(self._write_config(""))
        assert config == CcostConfig()

    def test_missing_explicit_file_raises(self):
        """Test that an explicit missing path is an error."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises(self):
        """Test that malformed YAML raises YAMLError."""
        with pytest.raises(yaml.YAMLError, match="Invalid YAML"):
            load_config(self._write_config("workers: [1, 2\n"))

    def test_unknown_keys_rejected(self):
        """Test that unknown keys are rejected."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config({"workers": 1, "colour": "blue"}))

    def test_non_mapping_rejected(self):
        """Test that a top-level list is rejected."""
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(self._write_config(["a", "b"]))

    @pytest.mark.parametrize("workers", [0, -1, "four", True, 1.5])
    def test_invalid_workers_rejected(self, workers):
        """Test that workers must be a positive integer."""
        with pytest.raises(ValueError, match="workers"):
            load_config(self._write_config({"workers": workers}))

    def test_empty_path_rejected(self):
        """Test that path settings must be non-empty strings."""
        with pytest.raises(ValueError, match="projects_dir"):
            load_config(self._write_config({"projects_dir": ""}))


class TestEnvironmentOverrides:
    """Test CCOST_* environment variables."""

    def test_environment_wins_over_file(self, monkeypatch, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("projects_dir: /from/file\nworkers: 2\n", encoding="utf-8")
        monkeypatch.setenv(ENV_PROJECTS_DIR, "/from/env")
        monkeypatch.setenv(ENV_CACHE_DIR, "/cache/env")
        monkeypatch.setenv(ENV_WORKERS, "6")

        config = load_config(config_file)

        assert config.projects_dir == Path("/from/env")
        assert config.cache_dir == Path("/cache/env")
        assert config.workers == 6

    @pytest.mark.parametrize("value", ["zero", "0", "-3"])
    def test_invalid_worker_env_ignored(self, monkeypatch, value):
        monkeypatch.setenv(ENV_WORKERS, value)
        assert load_config().workers == 1


class TestCcostConfig:
    """Test the config dataclass directly."""

    def test_workers_validated(self):
        with pytest.raises(ValueError):
            CcostConfig(workers=0)
