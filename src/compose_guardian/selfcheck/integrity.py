"""Reference-tree reconciliation.

Makes the target tree match the reference tree: reference files that are
missing or differ (by sha256) are copied over, and target files without a
reference counterpart are removed. Paths matching an ignore pattern are
skipped in both directions. Per-file failures are collected, not raised.
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from compose_guardian.exceptions import IntegrityError
from compose_guardian.logging import get_logger
from compose_guardian.utils import parse_list_lines

log = get_logger("compose_guardian.selfcheck.integrity")


@dataclass
class ReconcileReport:
    """What one reconciliation pass changed."""

    files_fixed: list[str] = field(default_factory=list)
    files_removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def message(self) -> str:
        counts = (
            f"{len(self.files_fixed)} files fixed, {len(self.files_removed)} files removed"
        )
        if self.success:
            return f"Integrity check completed: {counts}"
        return f"Integrity check completed with {len(self.errors)} errors: {counts}"


def load_ignore_patterns(path: Path) -> list[str]:
    """Read glob patterns, one per line; a missing file means no patterns."""
    try:
        return parse_list_lines(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []


def is_ignored(relative_path: str, patterns: list[str]) -> bool:
    """Match a pattern against the relative path or just its file name."""
    name = PurePosixPath(relative_path).name
    return any(
        fnmatch.fnmatchcase(relative_path, pattern) or fnmatch.fnmatchcase(name, pattern)
        for pattern in patterns
    )


def _list_files(root: Path) -> list[str]:
    """Relative POSIX paths of regular files under *root*."""
    files: list[str] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            full = Path(dirpath) / filename
            if full.is_file() and not full.is_symlink():
                files.append(full.relative_to(root).as_posix())
    return sorted(files)


def _sha256(path: Path) -> str:
    with open(path, "rb") as fh:
        return hashlib.file_digest(fh, "sha256").hexdigest()


def reconcile_tree(
    reference: Path,
    target: Path,
    ignore_patterns: list[str] | None = None,
) -> ReconcileReport:
    """Copy-fix and prune *target* so it mirrors *reference*.

    Raises:
        IntegrityError: If the reference tree does not exist.
    """
    if not reference.is_dir():
        raise IntegrityError(f"Reference tree {reference} does not exist")

    patterns = list(ignore_patterns or [])
    report = ReconcileReport()
    target.mkdir(parents=True, exist_ok=True)

    reference_files = _list_files(reference)
    reference_set = set(reference_files)

    for relative in reference_files:
        if is_ignored(relative, patterns):
            continue
        source = reference / relative
        destination = target / relative
        try:
            if destination.is_file() and _sha256(source) == _sha256(destination):
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
            report.files_fixed.append(relative)
            log.info("integrity_file_fixed", path=relative)
        except OSError as exc:
            report.errors.append(f"Failed to process {relative}: {exc}")
            log.warning("integrity_file_error", path=relative, error=str(exc))

    for relative in _list_files(target):
        if relative in reference_set or is_ignored(relative, patterns):
            continue
        try:
            (target / relative).unlink()
            report.files_removed.append(relative)
            log.info("integrity_file_removed", path=relative)
        except OSError as exc:
            report.errors.append(f"Failed to remove {relative}: {exc}")
            log.warning("integrity_file_error", path=relative, error=str(exc))

    _prune_empty_dirs(reference, target)
    return report


def _prune_empty_dirs(reference: Path, target: Path) -> None:
    """Remove directories left empty that have no reference counterpart."""
    for dirpath, _dirnames, _filenames in os.walk(target, topdown=False):
        directory = Path(dirpath)
        if directory == target:
            continue
        relative = directory.relative_to(target)
        if (reference / relative).is_dir():
            continue
        try:
            directory.rmdir()
        except OSError:
            # Not empty: it still holds ignored files.
            continue
