"""Write repaired source text back to disk."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


class PatchError(RuntimeError):
    """Raised when repaired content cannot be written."""


def apply_replacement(path: Path | str, content: str) -> Path:
    """Replace the contents of ``path`` with ``content`` atomically.

    A trailing newline is enforced so the rewritten file stays POSIX-friendly.
    """

    target = Path(path)
    if not target.parent.is_dir():
        raise PatchError(f"Parent directory does not exist: {target.parent}")
    text = content if content.endswith("\n") else f"{content}\n"
    handle, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(handle, "w", encoding="utf-8") as stream:
            stream.write(text)
        if target.exists():
            os.chmod(temp_name, target.stat().st_mode & 0o777)
        os.replace(temp_name, target)
    except OSError as error:
        Path(temp_name).unlink(missing_ok=True)
        raise PatchError(f"Failed to write {target}: {error}") from error
    return target


__all__ = ["PatchError", "apply_replacement"]
