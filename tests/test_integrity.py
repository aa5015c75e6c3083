"""Tests for compose_guardian.selfcheck.integrity tree reconciliation."""

from __future__ import annotations

from pathlib import Path

import pytest

from compose_guardian.exceptions import IntegrityError
from compose_guardian.selfcheck.integrity import (
    ReconcileReport,
    is_ignored,
    load_ignore_patterns,
    reconcile_tree,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write(root: Path, relative: str, content: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def trees(tmp_path: Path) -> tuple[Path, Path]:
    reference = tmp_path / "reference"
    target = tmp_path / "target"
    _write(reference, "docker-compose.yml", "services: {}\n")
    _write(reference, "scripts/self-check/ensure-swap.sh", "#!/bin/sh\n")
    _write(reference, "scripts/tools/run.sh", "#!/bin/sh\necho run\n")
    return reference, target


# ---------------------------------------------------------------------------
# Ignore patterns
# ---------------------------------------------------------------------------


class TestIgnorePatterns:
    """Tests for pattern loading and matching."""

    def test_missing_file_means_no_patterns(self, tmp_path: Path) -> None:
        assert load_ignore_patterns(tmp_path / ".ignore") == []

    def test_comments_and_blanks_are_skipped(self, tmp_path: Path) -> None:
        path = _write(tmp_path, ".ignore", "# local overrides\n\n*.env\n  data/*  \n")
        assert load_ignore_patterns(path) == ["*.env", "data/*"]

    def test_matches_full_path_or_basename(self) -> None:
        assert is_ignored("config/app.env", ["*.env"])
        assert is_ignored("data/db.sqlite", ["data/*"])
        assert not is_ignored("config/app.yml", ["*.env", "data/*"])


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestReconcileTree:
    """Tests for copy-fix and prune."""

    def test_copies_missing_files(self, trees: tuple[Path, Path]) -> None:
        reference, target = trees

        report = reconcile_tree(reference, target)

        assert sorted(report.files_fixed) == [
            "docker-compose.yml",
            "scripts/self-check/ensure-swap.sh",
            "scripts/tools/run.sh",
        ]
        assert (target / "scripts/tools/run.sh").read_text() == "#!/bin/sh\necho run\n"
        assert report.success

    def test_second_run_changes_nothing(self, trees: tuple[Path, Path]) -> None:
        reference, target = trees
        reconcile_tree(reference, target)

        report = reconcile_tree(reference, target)

        assert report.files_fixed == []
        assert report.files_removed == []
        assert report.message == "Integrity check completed: 0 files fixed, 0 files removed"

    def test_restores_modified_file(self, trees: tuple[Path, Path]) -> None:
        reference, target = trees
        reconcile_tree(reference, target)
        _write(target, "docker-compose.yml", "services: {hacked: {}}\n")

        report = reconcile_tree(reference, target)

        assert report.files_fixed == ["docker-compose.yml"]
        assert (target / "docker-compose.yml").read_text() == "services: {}\n"

    def test_removes_extra_files_and_empty_dirs(self, trees: tuple[Path, Path]) -> None:
        reference, target = trees
        _write(target, "stale/leftover.sh", "old")

        report = reconcile_tree(reference, target)

        assert report.files_removed == ["stale/leftover.sh"]
        assert not (target / "stale").exists()

    def test_ignored_files_are_left_alone(self, trees: tuple[Path, Path]) -> None:
        reference, target = trees
        _write(target, "docker-compose.yml", "services: {local: {}}\n")
        _write(target, "local/notes.txt", "mine")
        _write(target, ".ignore", "docker-compose.yml\nlocal/*\n")

        report = reconcile_tree(reference, target, [".ignore", "docker-compose.yml", "local/*"])

        assert "docker-compose.yml" not in report.files_fixed
        assert (target / "docker-compose.yml").read_text() == "services: {local: {}}\n"
        assert (target / "local/notes.txt").exists()
        assert (target / ".ignore").exists()
        assert report.files_removed == []

    def test_missing_reference_raises(self, tmp_path: Path) -> None:
        with pytest.raises(IntegrityError):
            reconcile_tree(tmp_path / "nope", tmp_path / "target")

    def test_report_message_with_errors(self) -> None:
        report = ReconcileReport(files_fixed=["a"], errors=["Failed to process b: denied"])
        assert not report.success
        assert report.message == (
            "Integrity check completed with 1 errors: 1 files fixed, 0 files removed"
        )
