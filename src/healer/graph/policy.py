"""Policies deciding when the persisted structure tree must be rebuilt."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Sequence

from ..memory.schema import StructureTree, utc_now

BUILD_DESCRIPTORS = frozenset({"pyproject.toml", "setup.py", "setup.cfg"})
TEST_SOURCE_DIR = "tests"

_SKIPPED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".healer",
        ".mypy_cache",
        ".pytest_cache",
        ".tox",
        ".venv",
        "__pycache__",
        "build",
        "dist",
        "node_modules",
        "venv",
    }
)


def walk_files(root: Path, max_depth: int) -> Iterator[Path]:
    """Yield files below ``root`` at most ``max_depth`` directories deep."""
    root = Path(root)
    base_depth = len(root.parts)
    for current, dirnames, filenames in os.walk(root):
        current_path = Path(current)
        depth = len(current_path.parts) - base_depth
        if depth >= max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = sorted(
                name for name in dirnames if name not in _SKIPPED_DIRS and not name.startswith(".")
            )
        for filename in sorted(filenames):
            yield current_path / filename


def _modified_after(path: Path, moment: datetime) -> bool:
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return False
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(mtime, tz=timezone.utc) > moment


class UpdatePolicy:
    """Base class; subclasses implement :meth:`_should_rebuild`."""

    def should_rebuild(self, existing: StructureTree | None, project_root: Path | str) -> bool:
        if existing is None:
            return True
        return self._should_rebuild(existing, Path(project_root))

    def _should_rebuild(self, existing: StructureTree, project_root: Path) -> bool:
        raise NotImplementedError


class AlwaysRebuild(UpdatePolicy):
    def _should_rebuild(self, existing: StructureTree, project_root: Path) -> bool:
        return True


class NeverRebuild(UpdatePolicy):
    """Rebuild only when no tree has been persisted yet."""

    def _should_rebuild(self, existing: StructureTree, project_root: Path) -> bool:
        return False


@dataclass(slots=True)
class OlderThan(UpdatePolicy):
    max_age: timedelta = timedelta(hours=24)
    clock: Callable[[], datetime] = field(default=utc_now, repr=False)

    def _should_rebuild(self, existing: StructureTree, project_root: Path) -> bool:
        last_updated = existing.last_updated
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        return self.clock() - last_updated > self.max_age


@dataclass(slots=True)
class TestFilesModified(UpdatePolicy):
    """Rebuild when any Python file below a ``tests`` directory changed."""

    __test__ = False

    max_depth: int = 10

    def _should_rebuild(self, existing: StructureTree, project_root: Path) -> bool:
        for path in walk_files(project_root, self.max_depth):
            if path.suffix != ".py":
                continue
            if TEST_SOURCE_DIR not in path.relative_to(project_root).parts[:-1]:
                continue
            if _modified_after(path, existing.last_updated):
                return True
        return False


@dataclass(slots=True)
class BuildDescriptorModified(UpdatePolicy):
    """Rebuild when a packaging descriptor changed, which signals structural change."""

    max_depth: int = 5

    def _should_rebuild(self, existing: StructureTree, project_root: Path) -> bool:
        return any(
            path.name in BUILD_DESCRIPTORS and _modified_after(path, existing.last_updated)
            for path in walk_files(project_root, self.max_depth)
        )


@dataclass(slots=True)
class AnyOf(UpdatePolicy):
    """Composite policy: rebuild when any member asks for it."""

    policies: Sequence[UpdatePolicy] = ()

    def _should_rebuild(self, existing: StructureTree, project_root: Path) -> bool:
        return any(policy.should_rebuild(existing, project_root) for policy in self.policies)


DEFAULT_UPDATE_POLICY = AnyOf([BuildDescriptorModified(), OlderThan(timedelta(hours=24))])

_POLICY_NAMES = {
    "always": lambda options: AlwaysRebuild(),
    "never": lambda options: NeverRebuild(),
    "older-than": lambda options: OlderThan(
        timedelta(hours=float(options.get("max_age_hours", 24)))
    ),
    "test-files-modified": lambda options: TestFilesModified(),
    "build-descriptor-modified": lambda options: BuildDescriptorModified(),
}


def policy_from_config(config: Mapping[str, Any]) -> UpdatePolicy:
    """Build an update policy from the ``graph`` configuration section."""
    graph_cfg = config.get("graph") or {}
    names = graph_cfg.get("update_policy")
    if not names:
        return DEFAULT_UPDATE_POLICY
    if isinstance(names, str):
        names = [names]
    members: list[UpdatePolicy] = []
    for name in names:
        key = str(name).strip().lower()
        factory = _POLICY_NAMES.get(key)
        if factory is None:
            raise ValueError(f"Unknown graph update policy: {name}")
        members.append(factory(graph_cfg))
    if len(members) == 1:
        return members[0]
    return AnyOf(members)


__all__ = [
    "AlwaysRebuild",
    "AnyOf",
    "BUILD_DESCRIPTORS",
    "BuildDescriptorModified",
    "DEFAULT_UPDATE_POLICY",
    "NeverRebuild",
    "OlderThan",
    "TEST_SOURCE_DIR",
    "TestFilesModified",
    "UpdatePolicy",
    "policy_from_config",
    "walk_files",
]
