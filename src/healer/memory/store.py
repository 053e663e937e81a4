"""Durable storage for the structure tree: one canonical document plus archives."""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from pydantic import ValidationError

from .schema import StructureTree, TestMethodNode, utc_now

DEFAULT_STORAGE_DIR = Path(".healer")
GRAPH_FILENAME = "test-graph.json"
ARCHIVE_DIRNAME = "archives"
LOGGER = logging.getLogger(__name__)

MethodTransform = Callable[[TestMethodNode], TestMethodNode]


def _archive_stamp(moment: datetime) -> str:
    """Render ``moment`` as a filesystem-safe timestamp."""
    return moment.isoformat().replace(":", "-").replace("+", "_")


class GraphStore:
    """JSON-file persistence owning the canonical structure document."""

    def __init__(self, storage_root: Path | str = DEFAULT_STORAGE_DIR) -> None:
        self.storage_root = Path(storage_root)
        self.graph_path = self.storage_root / GRAPH_FILENAME
        self.archive_root = self.storage_root / ARCHIVE_DIRNAME

    @classmethod
    def from_config(cls, config: Mapping[str, Any], project_root: Path | str) -> "GraphStore":
        paths = config.get("paths") or {}
        storage_value = paths.get("storage") or DEFAULT_STORAGE_DIR.as_posix()
        storage = Path(storage_value)
        if not storage.is_absolute():
            storage = Path(project_root) / storage
        return cls(storage)

    # ------------------------------------------------------------------ io
    def exists(self) -> bool:
        return self.graph_path.is_file()

    def save(self, tree: StructureTree) -> Path:
        """Atomically replace the canonical document with ``tree``."""
        payload = tree.model_dump_json(indent=2)
        self.storage_root.mkdir(parents=True, exist_ok=True)
        handle, temp_name = tempfile.mkstemp(
            prefix=".test-graph-",
            suffix=".json.tmp",
            dir=self.storage_root,
        )
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(payload)
            os.replace(temp_name, self.graph_path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        return self.graph_path

    def load(self) -> Optional[StructureTree]:
        """Return the persisted tree, or ``None`` when absent or unreadable."""
        if not self.graph_path.is_file():
            return None
        try:
            payload = self.graph_path.read_text(encoding="utf-8")
            return StructureTree.model_validate_json(payload)
        except (OSError, UnicodeDecodeError, ValidationError, ValueError) as error:
            LOGGER.warning("Failed to load test graph from %s: %s", self.graph_path, error)
            return None

    def archive(self, tree: StructureTree, *, timestamp: datetime | None = None) -> Path:
        """Write an immutable timestamped copy of ``tree`` and return its path."""
        self.archive_root.mkdir(parents=True, exist_ok=True)
        stem = f"test-graph-{_archive_stamp(timestamp or utc_now())}"
        target = self.archive_root / f"{stem}.json"
        suffix = 1
        while target.exists():
            target = self.archive_root / f"{stem}-{suffix}.json"
            suffix += 1
        with target.open("x", encoding="utf-8") as stream:
            stream.write(tree.model_dump_json(indent=2))
        return target

    def list_archives(self) -> List[Path]:
        if not self.archive_root.is_dir():
            return []
        return sorted(
            (path for path in self.archive_root.glob("test-graph-*.json") if path.is_file()),
            key=lambda item: (item.stat().st_mtime, item.name),
        )

    # ------------------------------------------------------------- updates
    @staticmethod
    def update_method(
        tree: StructureTree,
        module_id: str,
        class_id: str,
        method_id: str,
        transform: MethodTransform,
    ) -> StructureTree:
        """Return a new tree where the addressed method has been transformed.

        Every node along the path is rebuilt; nodes off the path are shared.
        The cost is proportional to the size of the tree, which is acceptable
        for per-method updates at current project sizes.
        """

        modules = []
        for module in tree.modules:
            if module.id != module_id:
                modules.append(module)
                continue
            classes = []
            for test_class in module.test_classes:
                if test_class.id != class_id:
                    classes.append(test_class)
                    continue
                methods = [
                    transform(method) if method.id == method_id else method
                    for method in test_class.test_methods
                ]
                classes.append(test_class.model_copy(update={"test_methods": methods}))
            modules.append(module.model_copy(update={"test_classes": classes}))
        return tree.model_copy(update={"modules": modules})


__all__ = ["DEFAULT_STORAGE_DIR", "GRAPH_FILENAME", "GraphStore", "MethodTransform"]
