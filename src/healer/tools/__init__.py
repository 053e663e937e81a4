"""Tool integrations exposed by the healer runtime."""

from .guard import IntegrityGuard, IntegrityViolation
from .patch import PatchError, apply_replacement
from .pytest_runner import (
    ClassExecutionResult,
    ClassExecutor,
    DiscoveredMethod,
    FailureDetail,
    MethodDiscovery,
    PytestClassExecutor,
    PytestDiscovery,
    PytestRun,
    run_pytest,
)
from .vcs import GitError, GitRepository, SnapshotManager

__all__ = [
    "ClassExecutionResult",
    "ClassExecutor",
    "DiscoveredMethod",
    "FailureDetail",
    "GitError",
    "GitRepository",
    "IntegrityGuard",
    "IntegrityViolation",
    "MethodDiscovery",
    "PatchError",
    "PytestClassExecutor",
    "PytestDiscovery",
    "PytestRun",
    "SnapshotManager",
    "apply_replacement",
    "run_pytest",
]
