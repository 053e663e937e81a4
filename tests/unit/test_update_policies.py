from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

from healer.graph.policy import (
    DEFAULT_UPDATE_POLICY,
    AlwaysRebuild,
    AnyOf,
    BuildDescriptorModified,
    NeverRebuild,
    OlderThan,
    TestFilesModified,
    policy_from_config,
    walk_files,
)
from healer.memory.schema import StructureTree

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _touch(path, moment: datetime) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("# touched\n", encoding="utf-8")
    stamp = moment.timestamp()
    os.utime(path, (stamp, stamp))


def test_every_policy_rebuilds_without_existing_tree(tmp_path) -> None:
    for policy in (AlwaysRebuild(), NeverRebuild(), OlderThan(), TestFilesModified(), BuildDescriptorModified()):
        assert policy.should_rebuild(None, tmp_path) is True


def test_always_and_never(tmp_path) -> None:
    tree = StructureTree(last_updated=NOW)
    assert AlwaysRebuild().should_rebuild(tree, tmp_path) is True
    assert NeverRebuild().should_rebuild(tree, tmp_path) is False


def test_older_than_uses_clock(tmp_path) -> None:
    tree = StructureTree(last_updated=NOW)
    fresh = OlderThan(timedelta(hours=24), clock=lambda: NOW + timedelta(hours=23))
    stale = OlderThan(timedelta(hours=24), clock=lambda: NOW + timedelta(hours=25))

    assert fresh.should_rebuild(tree, tmp_path) is False
    assert stale.should_rebuild(tree, tmp_path) is True


def test_build_descriptor_modified(tmp_path) -> None:
    tree = StructureTree(last_updated=NOW)
    _touch(tmp_path / "pyproject.toml", NOW - timedelta(hours=1))
    _touch(tmp_path / "service" / "setup.cfg", NOW - timedelta(hours=1))
    policy = BuildDescriptorModified()

    assert policy.should_rebuild(tree, tmp_path) is False

    _touch(tmp_path / "service" / "setup.cfg", NOW + timedelta(minutes=5))
    assert policy.should_rebuild(tree, tmp_path) is True


def test_build_descriptor_ignores_virtualenvs(tmp_path) -> None:
    tree = StructureTree(last_updated=NOW)
    _touch(tmp_path / ".venv" / "lib" / "pkg" / "setup.py", NOW + timedelta(hours=1))
    _touch(tmp_path / "node_modules" / "pkg" / "setup.py", NOW + timedelta(hours=1))

    assert BuildDescriptorModified().should_rebuild(tree, tmp_path) is False


def test_test_files_modified(tmp_path) -> None:
    tree = StructureTree(last_updated=NOW)
    _touch(tmp_path / "tests" / "test_calc.py", NOW - timedelta(hours=2))
    _touch(tmp_path / "src" / "calc.py", NOW + timedelta(hours=2))
    policy = TestFilesModified()

    assert policy.should_rebuild(tree, tmp_path) is False

    _touch(tmp_path / "service" / "tests" / "unit" / "test_api.py", NOW + timedelta(seconds=30))
    assert policy.should_rebuild(tree, tmp_path) is True


def test_any_of(tmp_path) -> None:
    tree = StructureTree(last_updated=NOW)
    assert AnyOf([NeverRebuild(), AlwaysRebuild()]).should_rebuild(tree, tmp_path) is True
    assert AnyOf([NeverRebuild(), NeverRebuild()]).should_rebuild(tree, tmp_path) is False
    assert AnyOf([]).should_rebuild(tree, tmp_path) is False


def test_policy_from_config() -> None:
    assert policy_from_config({}) is DEFAULT_UPDATE_POLICY
    assert isinstance(policy_from_config({"graph": {"update_policy": "always"}}), AlwaysRebuild)

    older = policy_from_config({"graph": {"update_policy": ["older-than"], "max_age_hours": 2}})
    assert isinstance(older, OlderThan)
    assert older.max_age == timedelta(hours=2)

    composite = policy_from_config({"graph": {"update_policy": ["never", "test-files-modified"]}})
    assert isinstance(composite, AnyOf)
    assert [type(member) for member in composite.policies] == [NeverRebuild, TestFilesModified]

    with pytest.raises(ValueError, match="Unknown graph update policy"):
        policy_from_config({"graph": {"update_policy": ["sometimes"]}})


def test_walk_files_respects_depth(tmp_path) -> None:
    _touch(tmp_path / "a.txt", NOW)
    _touch(tmp_path / "one" / "b.txt", NOW)
    _touch(tmp_path / "one" / "two" / "c.txt", NOW)

    shallow = {path.name for path in walk_files(tmp_path, 1)}
    deep = {path.name for path in walk_files(tmp_path, 5)}

    assert shallow == {"a.txt", "b.txt"}
    assert deep == {"a.txt", "b.txt", "c.txt"}
