"""
Configuration management and loading.

Handles application settings from an optional YAML file and environment
variables.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/ccost/config.yaml")
DEFAULT_PROJECTS_DIR = Path("~/.claude/projects")
DEFAULT_CACHE_DIR = Path("~/.cache/ccost")

DB_FILENAME = "cache.db"
PRICING_FILENAME = "pricing.json"

ENV_PROJECTS_DIR = "CCOST_PROJECTS_DIR"
ENV_CACHE_DIR = "CCOST_CACHE_DIR"
ENV_WORKERS = "CCOST_WORKERS"


@dataclass(frozen=True)
class CcostConfig:
    """Resolved settings for one process."""
    projects_dir: Path = field(default_factory=DEFAULT_PROJECTS_DIR.expanduser)
    cache_dir: Path = field(default_factory=DEFAULT_CACHE_DIR.expanduser)
    workers: int = 1

    def __post_init__(self):
        """Validate worker count is positive."""
        if isinstance(self.workers, bool) or not isinstance(self.workers, int) or self.workers < 1:
            raise ValueError("workers must be an integer >= 1")

    @property
    def db_path(self) -> Path:
        """SQLite usage cache location."""
        return self.cache_dir / DB_FILENAME

    @property
    def pricing_file(self) -> Path:
        """Optional pricing override file location."""
        return self.cache_dir / PRICING_FILENAME


def load_config(path: Optional[Union[str, Path]] = None) -> CcostConfig:
    """Load and validate configuration.

    Reads the YAML file (``~/.config/ccost/config.yaml`` unless ``path`` is
    given), then applies ``CCOST_PROJECTS_DIR``, ``CCOST_CACHE_DIR`` and
    ``CCOST_WORKERS`` from the environment.

    Args:
        path: Optional explicit path to a YAML configuration file

    Returns:
        Validated CcostConfig object

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        config_path = DEFAULT_CONFIG_PATH.expanduser()

    settings = {}
    if config_path.exists():
        settings = _read_config_file(config_path)

    settings.update(_read_environment())
    return CcostConfig(**settings)


def _read_config_file(config_path: Path) -> Dict:
    """Parse and validate the YAML configuration file.

    Args:
        config_path: Existing configuration file

    Returns:
        Keyword arguments for CcostConfig

    Raises:
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    # An empty file means defaults
    if raw_config is None:
        return {}

    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_keys = {'projects_dir', 'cache_dir', 'workers'}
    unknown_keys = set(raw_config.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    settings = {}
    for key in ('projects_dir', 'cache_dir'):
        if key in raw_config:
            value = raw_config[key]
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"'{key}' must be a non-empty string")
            settings[key] = Path(value).expanduser()

    if 'workers' in raw_config:
        workers = raw_config['workers']
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
            raise ValueError("'workers' must be an integer >= 1")
        settings['workers'] = workers

    return settings


def _read_environment() -> Dict:
    settings = {}

    projects_dir = os.environ.get(ENV_PROJECTS_DIR)
    if projects_dir:
        settings['projects_dir'] = Path(projects_dir).expanduser()

    cache_dir = os.environ.get(ENV_CACHE_DIR)
    if cache_dir:
        settings['cache_dir'] = Path(cache_dir).expanduser()

    workers = os.environ.get(ENV_WORKERS)
    if workers:
        try:
            value = int(workers)
            if value < 1:
                raise ValueError(workers)
            settings['workers'] = value
        except ValueError:
            logger.warning("Invalid %s=%r, ignoring", ENV_WORKERS, workers)

    return settings
