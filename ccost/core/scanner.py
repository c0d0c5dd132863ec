"""
Usage-log discovery and change detection.

Finds session log files under the projects root and classifies them against
the cached manifest.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Union

from ccost.storage.models import CachedFileMeta, FileRecord

logger = logging.getLogger(__name__)

LOG_EXTENSION = ".jsonl"


@dataclass(frozen=True)
class DiffResult:
    """Classification of discovered files relative to the cache."""
    added: List[FileRecord] = field(default_factory=list)
    changed: List[FileRecord] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def to_process(self) -> List[FileRecord]:
        """Files that must be (re)parsed this run."""
        return self.added + self.changed

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.changed or self.removed)


def session_id_for(file_path: str) -> str:
    """Session id is the log file name without its extension."""
    name = os.path.basename(file_path)
    if name.endswith(LOG_EXTENSION):
        return name[:-len(LOG_EXTENSION)]
    return name


def project_dir_for(file_path: str, root: str) -> str:
    """Return the path segment directly under root.

    Files directly under root yield their own name; files outside root
    yield the path unchanged.
    """
    prefix = root.rstrip(os.sep) + os.sep
    if not file_path.startswith(prefix):
        return file_path
    relative = file_path[len(prefix):]
    return relative.split(os.sep, 1)[0]


class FileScanner:
    """Discovers usage-log files below a projects root."""

    def __init__(self, projects_dir: Union[str, Path]):
        self.projects_dir = str(Path(projects_dir).expanduser())

    def _walk(self) -> List[str]:
        paths = []
        for dirpath, _dirnames, filenames in os.walk(self.projects_dir):
            for name in filenames:
                if name.endswith(LOG_EXTENSION):
                    paths.append(os.path.join(dirpath, name))
        return sorted(paths)

    def discover_files(self) -> List[FileRecord]:
        """Find every log file and read its size and modification time.

        No file content is read. Files that vanish or cannot be stat'ed
        between listing and stat are skipped.

        Returns:
            FileRecord candidates sorted by path
        """
        files = []
        for file_path in self._walk():
            try:
                stat = os.stat(file_path)
            except OSError as e:
                logger.debug("Skipping %s: %s", file_path, e)
                continue

            files.append(FileRecord(
                file_path=file_path,
                mtime_ms=stat.st_mtime_ns // 1_000_000,
                size=stat.st_size,
                session_id=session_id_for(file_path),
                project_dir=project_dir_for(file_path, self.projects_dir),
            ))

        logger.debug("Discovered %d log files under %s", len(files), self.projects_dir)
        return files

    @staticmethod
    def diff_files(
        discovered: List[FileRecord],
        cached: Mapping[str, CachedFileMeta],
    ) -> DiffResult:
        """Classify discovered files against cached metadata.

        A file absent from the cache is added; one whose (mtime_ms, size)
        differs is changed; otherwise it is unchanged. Cached paths that
        were not discovered are removed. Every path lands in exactly one
        group.

        Args:
            discovered: Files found on disk
            cached: Cached metadata keyed by path

        Returns:
            DiffResult partitioning discovered and cached paths
        """
        result = DiffResult()
        seen = set()

        for file in discovered:
            seen.add(file.file_path)
            entry = cached.get(file.file_path)
            if entry is None:
                result.added.append(file)
            elif entry.mtime_ms != file.mtime_ms or entry.size != file.size:
                result.changed.append(file)
            else:
                result.unchanged.append(file.file_path)

        result.removed.extend(sorted(path for path in cached if path not in seen))
        return result
