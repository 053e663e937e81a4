from __future__ import annotations

import pytest

from conftest import run_git

from healer.tools.vcs import GitError, GitRepository, SnapshotManager


def test_snapshot_commits_pending_changes(calculator_project) -> None:
    snapshots = SnapshotManager.for_path(calculator_project / "tests")
    (calculator_project / "notes.txt").write_text("pending\n", encoding="utf-8")

    created = snapshots.snapshot("pre-repair snapshot for tests.test_calculator.TestCalculator")

    assert created is not None
    assert snapshots.checkpoint == created
    assert not snapshots.repo.has_changes()
    log = run_git(calculator_project, "log", "--format=%s")
    assert log.splitlines()[0] == "pre-repair snapshot for tests.test_calculator.TestCalculator"


def test_snapshot_of_clean_tree_is_a_no_op(calculator_project) -> None:
    snapshots = SnapshotManager.for_path(calculator_project)
    head = snapshots.repo.head()

    assert snapshots.snapshot("nothing to do") is None
    assert snapshots.checkpoint == head
    assert len(run_git(calculator_project, "log", "--format=%H").splitlines()) == 1


def test_rollback_restores_checkpoint(calculator_project) -> None:
    snapshots = SnapshotManager.for_path(calculator_project)
    test_file = calculator_project / "tests" / "test_calculator.py"
    original = test_file.read_text(encoding="utf-8")
    snapshots.snapshot("checkpoint")

    test_file.write_text("class TestCalculator:\n    pass\n", encoding="utf-8")
    snapshots.stage(test_file)
    assert run_git(calculator_project, "diff", "--cached", "--name-only").splitlines() == ["tests/test_calculator.py"]

    snapshots.rollback()

    assert test_file.read_text(encoding="utf-8") == original
    assert not snapshots.repo.has_changes()


def test_rollback_keeps_the_checkpoint_commit(calculator_project) -> None:
    snapshots = SnapshotManager.for_path(calculator_project)
    (calculator_project / "draft.py").write_text("VALUE = 1\n", encoding="utf-8")
    checkpoint = snapshots.snapshot("checkpoint with draft")

    (calculator_project / "draft.py").write_text("VALUE = 2\n", encoding="utf-8")
    snapshots.rollback()

    assert snapshots.repo.head() == checkpoint
    assert (calculator_project / "draft.py").read_text(encoding="utf-8") == "VALUE = 1\n"


def test_repository_requires_git(tmp_path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)
    with pytest.raises(GitError):
        GitRepository.discover(tmp_path)
