"""Scan a project and produce a fresh structure tree without history."""

from __future__ import annotations

import ast
import logging
from pathlib import Path
from typing import List, Optional

from ..memory.schema import ModuleNode, StructureTree, TestClassNode, TestMethodNode, utc_now
from ..tools.pytest_runner import MethodDiscovery
from .policy import BUILD_DESCRIPTORS, TEST_SOURCE_DIR, walk_files

LOGGER = logging.getLogger(__name__)

ROOT_MODULE_ID = "."
_MODULE_SCAN_DEPTH = 5


def is_test_file(path: Path) -> bool:
    name = path.name
    return path.suffix == ".py" and (name.startswith("test_") or name.endswith("_test.py"))


def find_test_classes(source: str) -> List[str]:
    """Return the top-level ``Test*`` class names defined in ``source``."""
    tree = ast.parse(source)
    return [
        node.name
        for node in tree.body
        if isinstance(node, ast.ClassDef) and node.name.startswith("Test")
    ]


class GraphBuilder:
    """Discover modules, test classes and test methods beneath ``project_root``."""

    def __init__(self, project_root: Path | str, discovery: MethodDiscovery) -> None:
        self.project_root = Path(project_root).resolve()
        self.discovery = discovery

    def build(self) -> StructureTree:
        return StructureTree(modules=self.discover_modules(), last_updated=utc_now())

    def discover_modules(self) -> List[ModuleNode]:
        module_dirs = sorted(
            {
                path.parent
                for path in walk_files(self.project_root, _MODULE_SCAN_DEPTH)
                if path.name in BUILD_DESCRIPTORS and path.parent != self.project_root
            }
        )
        if not module_dirs:
            module_dirs = [self.project_root]

        modules: List[ModuleNode] = []
        for module_dir in module_dirs:
            module = self._build_module(module_dir)
            if module is not None:
                modules.append(module)
        return modules

    def _module_id(self, module_dir: Path) -> str:
        if module_dir == self.project_root:
            return ROOT_MODULE_ID
        return module_dir.relative_to(self.project_root).as_posix()

    def _build_module(self, module_dir: Path) -> Optional[ModuleNode]:
        module_id = self._module_id(module_dir)
        test_classes = self._discover_classes(module_dir, module_id)
        if not test_classes:
            LOGGER.debug("Skipping module %s: no test classes discovered", module_id)
            return None
        return ModuleNode(
            id=module_id,
            name=module_dir.name,
            path=module_dir.as_posix(),
            test_classes=test_classes,
        )

    def _discover_classes(self, module_dir: Path, module_id: str) -> List[TestClassNode]:
        test_root = module_dir / TEST_SOURCE_DIR
        if not test_root.is_dir():
            return []

        classes: List[TestClassNode] = []
        for test_file in sorted(path for path in test_root.rglob("*.py") if is_test_file(path)):
            if "__pycache__" in test_file.parts:
                continue
            try:
                names = find_test_classes(test_file.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, SyntaxError, ValueError) as error:
                LOGGER.debug("Skipping unparsable test file %s: %s", test_file, error)
                continue
            module_path = test_file.relative_to(module_dir).with_suffix("")
            dotted = ".".join(module_path.parts)
            for name in names:
                node = self._build_class(module_dir, module_id, test_file, f"{dotted}.{name}")
                if node is not None:
                    classes.append(node)
        return classes

    def _build_class(
        self,
        module_dir: Path,
        module_id: str,
        test_file: Path,
        fully_qualified_name: str,
    ) -> Optional[TestClassNode]:
        discovered = self.discovery.discover_methods(fully_qualified_name, cwd=module_dir)
        if not discovered:
            # Not importable yet or empty; omitted until the next rebuild.
            LOGGER.debug("Skipping %s: no test methods discovered", fully_qualified_name)
            return None
        methods = [
            TestMethodNode(id=item.id, name=item.name, display_name=item.display_name)
            for item in discovered
        ]
        return TestClassNode(
            id=f"{module_id}/{fully_qualified_name}",
            fully_qualified_name=fully_qualified_name,
            file_path=test_file.as_posix(),
            test_methods=methods,
        )


__all__ = ["GraphBuilder", "ROOT_MODULE_ID", "is_test_file", "find_test_classes"]
