"""Git checkpoints around repair attempts.

A repair run commits the working tree before touching a test file, stages each
rewritten file, and hard-resets to that commit when the retry budget runs out.
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import logging
import subprocess

LOGGER = logging.getLogger(__name__)


class GitError(RuntimeError):
    """A git invocation failed or no repository encloses the project."""


class GitRepository:
    """Thin command runner bound to one repository work tree."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"{self.root} is not the root of a git work tree")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Walk up from ``start`` until a directory containing ``.git`` is found."""

        origin = Path(start or Path.cwd()).resolve()
        for directory in (origin, *origin.parents):
            if (directory / ".git").exists():
                return cls(directory)
        raise GitError(f"No git repository encloses {origin}")

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run ``git <args>`` in the work tree and capture decoded output."""

        try:
            completed = subprocess.run(
                ["git", *args],
                cwd=self.root,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as error:
            raise GitError(f"Cannot launch git for {' '.join(args)}: {error}") from error
        if check and completed.returncode != 0:
            detail = (completed.stderr or completed.stdout).strip() or f"exit status {completed.returncode}"
            raise GitError(f"git {' '.join(args)}: {detail}")
        return completed

    def has_changes(self) -> bool:
        return bool(self.git("status", "--porcelain").stdout.strip())

    def head(self) -> str | None:
        """Current commit SHA, or ``None`` in a repository without commits."""

        completed = self.git("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        sha = completed.stdout.strip()
        return sha if completed.returncode == 0 and sha else None

    def stage(self, paths: Sequence[Path | str] = ()) -> None:
        """Stage ``paths``, or every change in the work tree when none are given."""

        if paths:
            self.git("add", "--", *(str(path) for path in paths))
        else:
            self.git("add", "-A")

    def commit(self, message: str) -> str:
        self.git("commit", "-m", message)
        return self.git("rev-parse", "HEAD").stdout.strip()

    def reset_hard(self, revision: str = "HEAD") -> None:
        self.git("reset", "--hard", revision)


class SnapshotManager:
    """Treat git commits as the transaction boundary of a repair attempt.

    ``snapshot`` stages everything and commits only when there is something to
    commit, then remembers ``HEAD`` as the checkpoint.  ``rollback`` hard-resets
    the working tree and index to that checkpoint, discarding every change made
    since.  Any git failure raises :class:`GitError`.
    """

    def __init__(self, repo: GitRepository) -> None:
        self.repo = repo
        self.checkpoint: str | None = None

    @classmethod
    def for_path(cls, path: Path | str) -> "SnapshotManager":
        return cls(GitRepository.discover(path))

    def snapshot(self, message: str) -> str | None:
        """Commit all pending changes; return the new commit SHA or ``None``."""

        self.repo.stage()
        created: str | None = None
        if self.repo.has_changes():
            created = self.repo.commit(message)
            LOGGER.info("Created checkpoint %s: %s", created[:7], message)
        else:
            LOGGER.debug("Working tree clean; no checkpoint commit needed for %r", message)
        self.checkpoint = self.repo.head()
        return created

    def stage(self, path: Path | str) -> None:
        self.repo.stage([path])

    def rollback(self) -> None:
        """Discard all changes made since the last checkpoint."""

        target = self.checkpoint or "HEAD"
        LOGGER.info("Rolling back working tree to %s", target[:7] if self.checkpoint else target)
        self.repo.reset_hard(target)


__all__ = ["GitError", "GitRepository", "SnapshotManager"]
