from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from healer.models.oracle import RepairContext, RepairOracle, RepairResult  # noqa: E402
from healer.tools.pytest_runner import (  # noqa: E402
    ClassExecutionResult,
    ClassExecutor,
    DiscoveredMethod,
    FailureDetail,
    MethodDiscovery,
)

CLASS_NAME = "tests.test_calculator.TestCalculator"

ORIGINAL_TEST_SOURCE = textwrap.dedent(
    """
    from calculator import add


    class TestCalculator:
        def test_add(self):
            assert add(2, 3) == 6

        def test_add_negative(self):
            assert add(-1, -1) == -2
    """
).lstrip()

FIXED_TEST_SOURCE = ORIGINAL_TEST_SOURCE.replace("== 6", "== 5")


def run_git(root: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@dataclass(slots=True)
class FakeDiscovery(MethodDiscovery):
    """Discovery double returning canned method names per class."""

    methods: Dict[str, List[str]] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)

    def discover_methods(self, class_name: str, *, cwd: Path | None = None) -> List[DiscoveredMethod]:
        self.calls.append(class_name)
        module_path, _, simple = class_name.rpartition(".")
        file_part = module_path.replace(".", "/") + ".py"
        return [
            DiscoveredMethod(id=f"{file_part}::{simple}::{name}", name=name, display_name=name)
            for name in self.methods.get(class_name, [])
        ]


@dataclass(slots=True)
class ScriptedExecutor(ClassExecutor):
    """Executor double replaying a sequence of results per class."""

    script: Dict[str, List[ClassExecutionResult]] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)

    def execute(self, class_name: str) -> ClassExecutionResult:
        self.calls.append(class_name)
        queue = self.script.get(class_name)
        if not queue:
            return ClassExecutionResult(class_name=class_name)
        if len(queue) == 1:
            return queue[0]
        return queue.pop(0)


@dataclass(slots=True)
class ScriptedOracle(RepairOracle):
    """Oracle double returning prepared sources (or raising prepared errors)."""

    responses: List[object] = field(default_factory=list)
    contexts: List[RepairContext] = field(default_factory=list)

    def repair(self, context: RepairContext) -> RepairResult:
        self.contexts.append(context)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return RepairResult(updated_source=str(response), raw_output=f"```python\n{response}\n```")


@dataclass(slots=True)
class RecordingSnapshots:
    """Snapshot manager double that only records calls."""

    calls: List[tuple[str, str]] = field(default_factory=list)

    def snapshot(self, message: str) -> str | None:
        self.calls.append(("snapshot", message))
        return None

    def stage(self, path: Path | str) -> None:
        self.calls.append(("stage", str(path)))

    def rollback(self) -> None:
        self.calls.append(("rollback", ""))

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)


def failing(class_name: str = CLASS_NAME, methods: Sequence[str] = ("test_add",)) -> ClassExecutionResult:
    return ClassExecutionResult(
        class_name=class_name,
        failures=[
            FailureDetail(method=name, message="assert 5 == 6", stacktrace="tests/test_calculator.py:6")
            for name in methods
        ],
    )


def passing(class_name: str = CLASS_NAME) -> ClassExecutionResult:
    return ClassExecutionResult(class_name=class_name)


@pytest.fixture()
def calculator_project(tmp_path: Path) -> Path:
    """A tiny Python project with one failing test class, committed to git."""

    root = tmp_path / "calculator-project"
    (root / "tests").mkdir(parents=True)
    (root / "pyproject.toml").write_text(
        textwrap.dedent(
            """
            [build-system]
            requires = ["setuptools"]
            build-backend = "setuptools.build_meta"

            [project]
            name = "calculator"
            version = "0.0.1"

            [tool.pytest.ini_options]
            testpaths = ["tests"]
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (root / ".gitignore").write_text("__pycache__/\n", encoding="utf-8")
    (root / "calculator.py").write_text(
        "def add(left, right):\n    return left + right\n",
        encoding="utf-8",
    )
    (root / "tests" / "conftest.py").write_text(
        textwrap.dedent(
            """
            import sys
            from pathlib import Path

            ROOT = Path(__file__).resolve().parents[1]
            if str(ROOT) not in sys.path:
                sys.path.insert(0, str(ROOT))
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (root / "tests" / "test_calculator.py").write_text(ORIGINAL_TEST_SOURCE, encoding="utf-8")

    run_git(root, "init")
    run_git(root, "config", "user.email", "healer@example.com")
    run_git(root, "config", "user.name", "Test Healer")
    run_git(root, "add", "-A")
    run_git(root, "commit", "-m", "Initial calculator project")
    return root


@pytest.fixture()
def calculator_discovery() -> FakeDiscovery:
    return FakeDiscovery(methods={CLASS_NAME: ["test_add", "test_add_negative"]})
