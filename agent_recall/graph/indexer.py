"""
Incremental code graph indexer.

For each discovered package the current file set is compared with the stored
per-file metadata:

* a file is *changed* if it is new or its mtime (or, in ``hash`` mode, its
  content hash) differs from the stored value;
* a file is *deleted* if it has metadata but no longer exists.

Only changed files are parsed.  The package's new rows, the removal of
deleted files and the metadata update are written in one transaction.
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .parser import PackageInfo, discover_packages, find_source_files, parse_package
from .store import FileMetadata, GraphStore

logger = logging.getLogger(__name__)

CHANGE_DETECTION_MODES = ("mtime", "hash")


@dataclass
class PackageReport:
    name: str
    changed_files: list[str] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)
    entities: int = 0
    relationships: int = 0
    errors: int = 0


@dataclass
class ReindexReport:
    packages: list[PackageReport] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def changed_files(self) -> int:
        return sum(len(p.changed_files) for p in self.packages)

    @property
    def deleted_files(self) -> int:
        return sum(len(p.deleted_files) for p in self.packages)

    @property
    def packages_updated(self) -> int:
        return sum(1 for p in self.packages if p.changed_files or p.deleted_files)


def compute_file_hash(file_path: str) -> str:
    """SHA-256 hex digest of a file's contents, or ``""`` if unreadable."""
    h = hashlib.sha256()
    try:
        with open(file_path, "rb") as fh:
            for chunk in iter(lambda: fh.read(65536), b""):
                h.update(chunk)
    except OSError:
        return ""
    return h.hexdigest()


def _mtime_ms(path: str) -> Optional[float]:
    try:
        return os.stat(path).st_mtime_ns / 1_000_000
    except OSError:
        return None


class GraphIndexer:
    """
    Keeps the stored code graph in step with the source tree.

    Parameters
    ----------
    store:
        Graph persistence.
    change_detection:
        ``"mtime"`` (default) or ``"hash"``.
    """

    def __init__(self, store: GraphStore, change_detection: str = "mtime") -> None:
        if change_detection not in CHANGE_DETECTION_MODES:
            raise ValueError(
                f"change_detection must be one of {CHANGE_DETECTION_MODES}, "
                f"got {change_detection!r}"
            )
        self._store = store
        self._mode = change_detection

    def _fingerprint(self, abs_path: str) -> tuple[Optional[float], Optional[str]]:
        mtime = _mtime_ms(abs_path)
        digest = compute_file_hash(abs_path) if self._mode == "hash" else None
        return mtime, digest

    def _is_changed(self, fingerprint: tuple[Optional[float], Optional[str]],
                    stored: Optional[FileMetadata]) -> bool:
        if stored is None:
            return True
        mtime, digest = fingerprint
        if self._mode == "hash":
            return digest != stored.content_hash
        return mtime is None or mtime != stored.mtime_ms

    def reindex_package(
        self,
        package: PackageInfo,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> PackageReport:
        """Re-parse the changed files of one package and store the result."""
        report = PackageReport(name=package.name)
        stored = self._store.get_file_metadata(package.name)
        current = {
            os.path.relpath(p, package.path).replace(os.sep, "/"): p
            for p in find_source_files(package.path, package.exclude_dirs)
        }

        # taken before parsing so an edit made during the parse is seen next run
        fingerprints = {rel: self._fingerprint(abs_path) for rel, abs_path in current.items()}
        report.changed_files = sorted(
            rel for rel in current
            if self._is_changed(fingerprints[rel], stored.get(rel))
        )
        report.deleted_files = sorted(set(stored) - set(current))
        if not report.changed_files and not report.deleted_files:
            return report

        changed_abs = [current[rel] for rel in report.changed_files]
        result = parse_package(package.path, package.name, files=changed_abs)
        if progress_callback:
            for idx, rel in enumerate(report.changed_files):
                progress_callback(idx + 1, len(report.changed_files), rel)

        metadata = []
        for rel in report.changed_files:
            mtime, digest = fingerprints[rel]
            if mtime is None:
                # vanished between walk and stat; picked up as deleted next run
                continue
            metadata.append(FileMetadata(
                file_path=rel,
                mtime_ms=mtime,
                entity_count=result.entity_count_for(rel),
                content_hash=digest,
            ))

        stored_result = self._store.store_graph(
            package.name,
            result,
            replace_files=report.changed_files,
            deleted_files=report.deleted_files,
            metadata=metadata,
        )
        report.entities = stored_result.entities
        report.relationships = stored_result.relationships
        report.errors = result.stats.get("errors", 0)
        logger.info(
            "Reindexed %s: %d changed, %d deleted, %d entities",
            package.name, len(report.changed_files), len(report.deleted_files),
            report.entities,
        )
        return report

    def reindex(
        self,
        root: str,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> ReindexReport:
        """
        Incrementally re-index every package discovered under *root*.

        Parameters
        ----------
        root:
            Repository root.
        progress_callback:
            Optional callable called with (current, total, filename) for each
            re-parsed file.
        """
        start = time.time()
        report = ReindexReport()
        for package in discover_packages(root):
            report.packages.append(self.reindex_package(package, progress_callback))
        report.elapsed_ms = int((time.time() - start) * 1000)
        return report
