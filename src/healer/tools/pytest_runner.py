"""Pytest-backed test execution and method discovery for test classes."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal, Mapping, Sequence

import logging
import os
import re
import subprocess
import sys
import tempfile
import xml.etree.ElementTree as ET

FailureKind = Literal["failure", "error"]

LOGGER = logging.getLogger(__name__)

# pytest exit codes: 0 all passed, 1 some failed, 5 nothing collected.
_CLEAN_EXIT_CODES = frozenset({0, 5})
_LOCATE_MAX_DEPTH = 6
_SKIPPED_DIRS = frozenset({"__pycache__", "node_modules", "venv", "build", "dist"})
_NODE_ID_RE = re.compile(r"^\S+\.py::\S")


@dataclass(slots=True)
class PytestRun:
    """Exit status and captured streams of one pytest subprocess."""

    args: tuple[str, ...]
    module_root: Path
    exit_code: int
    stdout: str
    stderr: str

    @property
    def clean(self) -> bool:
        """``True`` when pytest itself finished without an internal or usage error."""
        return self.exit_code in _CLEAN_EXIT_CODES

    def combined_output(self) -> str:
        return "\n".join(part.strip() for part in (self.stdout, self.stderr) if part.strip())


@dataclass(slots=True)
class FailureDetail:
    """A failing test method reported by the execution engine."""

    method: str
    message: str
    stacktrace: str
    kind: FailureKind = "failure"


@dataclass(slots=True)
class ClassExecutionResult:
    """Per-class execution summary; an empty ``failures`` list means pass."""

    class_name: str
    failures: List[FailureDetail] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    durations: Dict[str, int] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return not self.failures

    def failure_for(self, method_name: str) -> FailureDetail | None:
        return next((failure for failure in self.failures if failure.method == method_name), None)


@dataclass(slots=True, frozen=True)
class DiscoveredMethod:
    """Test method reported by the discovery collaborator."""

    id: str
    name: str
    display_name: str


@dataclass(slots=True, frozen=True)
class TestLocation:
    """Resolved on-disk location of a fully-qualified test class."""

    __test__ = False

    module_root: Path
    relative_file: Path
    class_name: str

    @property
    def file_path(self) -> Path:
        return self.module_root / self.relative_file

    @property
    def node_id(self) -> str:
        return f"{self.relative_file.as_posix()}::{self.class_name}"


def split_class_name(class_name: str) -> tuple[Path, str]:
    """Split ``pkg.tests.test_mod.TestCls`` into ``(pkg/tests/test_mod.py, TestCls)``."""
    module_path, sep, simple = class_name.strip().rpartition(".")
    if not sep or not module_path or not simple:
        raise ValueError(f"Not a fully-qualified test class name: {class_name!r}")
    return Path(*module_path.split(".")).with_suffix(".py"), simple


def locate_test_class(root: Path | str, class_name: str) -> TestLocation | None:
    """Find the file defining ``class_name`` beneath ``root``.

    The dotted module path is first resolved directly against ``root``; when
    that fails, nested module roots are searched so classes living in
    sub-projects are found as well.
    """

    base = Path(root).resolve()
    relative, simple = split_class_name(class_name)
    if (base / relative).is_file():
        return TestLocation(module_root=base, relative_file=relative, class_name=simple)

    depth_base = len(base.parts)
    for current, dirnames, _ in os.walk(base):
        current_path = Path(current)
        if len(current_path.parts) - depth_base >= _LOCATE_MAX_DEPTH:
            dirnames[:] = []
        else:
            dirnames[:] = sorted(
                name for name in dirnames if name not in _SKIPPED_DIRS and not name.startswith(".")
            )
        if (current_path / relative).is_file():
            return TestLocation(module_root=current_path, relative_file=relative, class_name=simple)
    return None


def _module_env(module_root: Path, overrides: Mapping[str, str]) -> Dict[str, str]:
    """Process environment for a module, with ``<module>/src`` importable when present."""
    env = {**os.environ, **{str(key): str(value) for key, value in overrides.items()}}
    src_dir = module_root / "src"
    if src_dir.is_dir():
        entries = [entry for entry in env.get("PYTHONPATH", "").split(os.pathsep) if entry]
        if str(src_dir) not in entries:
            env["PYTHONPATH"] = os.pathsep.join([str(src_dir), *entries])
    return env


def run_pytest(
    args: Sequence[str],
    *,
    module_root: Path | str,
    env: Mapping[str, str] | None = None,
) -> PytestRun:
    """Run ``python -m pytest <args>`` from ``module_root`` without the cache plugin."""

    root = Path(module_root).resolve()
    argv = (sys.executable, "-m", "pytest", "-p", "no:cacheprovider", *args)
    completed = subprocess.run(  # noqa: S603 - arguments assembled from test identifiers
        argv,
        cwd=root,
        env=_module_env(root, env or {}),
        capture_output=True,
        text=True,
        check=False,
    )
    return PytestRun(
        args=argv,
        module_root=root,
        exit_code=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


def _duration_ms(raw: str | None) -> int:
    try:
        return int(round(float(raw or 0) * 1000))
    except ValueError:
        return 0


def parse_junit_report(class_name: str, payload: str) -> ClassExecutionResult:
    """Convert a pytest JUnit XML report into a :class:`ClassExecutionResult`."""
    root = ET.fromstring(payload)
    result = ClassExecutionResult(class_name=class_name)
    for case in root.iter("testcase"):
        name = case.get("name") or "unknown"
        result.durations[name] = _duration_ms(case.get("time"))
        for kind in ("failure", "error"):
            node = case.find(kind)
            if node is not None:
                result.failures.append(
                    FailureDetail(
                        method=name,
                        message=node.get("message") or "Unknown failure",
                        stacktrace=(node.text or "").strip(),
                        kind=kind,
                    )
                )
                break
        else:
            if case.find("skipped") is not None:
                result.skipped.append(name)
    return result


def _class_level_error(class_name: str, message: str, detail: str = "") -> ClassExecutionResult:
    return ClassExecutionResult(
        class_name=class_name,
        failures=[FailureDetail(method=class_name, message=message, stacktrace=detail, kind="error")],
    )


class ClassExecutor:
    """Runs one test class and reports its failing methods."""

    def execute(self, class_name: str) -> ClassExecutionResult:
        raise NotImplementedError("Subclasses must implement execute().")


class MethodDiscovery:
    """Lists the test methods of a class without running them."""

    def discover_methods(self, class_name: str, *, cwd: Path | None = None) -> List[DiscoveredMethod]:
        raise NotImplementedError("Subclasses must implement discover_methods().")


class PytestClassExecutor(ClassExecutor):
    """Execute a test class through ``pytest`` and read the JUnit report."""

    def __init__(
        self,
        project_root: Path | str,
        *,
        extra_args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.extra_args = tuple(extra_args)
        self.env = dict(env or {})

    def execute(self, class_name: str) -> ClassExecutionResult:
        try:
            location = locate_test_class(self.project_root, class_name)
        except ValueError as error:
            return _class_level_error(class_name, str(error))
        if location is None:
            return _class_level_error(class_name, f"Test class {class_name} not found under {self.project_root}")

        with tempfile.TemporaryDirectory(prefix="healer-junit-") as scratch:
            report_path = Path(scratch) / "report.xml"
            run = run_pytest(
                [location.node_id, "-q", f"--junitxml={report_path}", *self.extra_args],
                module_root=location.module_root,
                env=self.env,
            )
            LOGGER.debug("pytest %s exited with %s", location.node_id, run.exit_code)
            report = report_path.read_text(encoding="utf-8") if report_path.is_file() else None

        if report is not None:
            try:
                result = parse_junit_report(class_name, report)
            except ET.ParseError as error:
                LOGGER.warning("Unreadable JUnit report for %s: %s", class_name, error)
            else:
                # A clean exit or reported failures both describe the class faithfully.
                if run.clean or result.failures:
                    return result

        return _class_level_error(class_name, f"pytest exited with code {run.exit_code}", run.combined_output())


class PytestDiscovery(MethodDiscovery):
    """Collect test methods with ``pytest --collect-only``."""

    def __init__(self, project_root: Path | str, *, env: Mapping[str, str] | None = None) -> None:
        self.project_root = Path(project_root).resolve()
        self.env = dict(env or {})

    def discover_methods(self, class_name: str, *, cwd: Path | None = None) -> List[DiscoveredMethod]:
        try:
            location = locate_test_class(cwd or self.project_root, class_name)
        except ValueError:
            return []
        if location is None:
            return []
        run = run_pytest(
            ["--collect-only", "-q", location.node_id],
            module_root=location.module_root,
            env=self.env,
        )
        if run.exit_code != 0:
            LOGGER.debug("Collection failed for %s: %s", class_name, run.stderr.strip())
            return []
        return parse_collected_node_ids(run.stdout)


def parse_collected_node_ids(stdout: str) -> List[DiscoveredMethod]:
    """Parse ``pytest --collect-only -q`` output into discovered methods."""
    methods: Dict[str, DiscoveredMethod] = {}
    for line in stdout.splitlines():
        node_id = line.strip()
        if _NODE_ID_RE.match(node_id) and node_id not in methods:
            name = node_id.rsplit("::", 1)[-1]
            methods[node_id] = DiscoveredMethod(id=node_id, name=name, display_name=name)
    return list(methods.values())


__all__ = [
    "ClassExecutionResult",
    "ClassExecutor",
    "DiscoveredMethod",
    "FailureDetail",
    "MethodDiscovery",
    "PytestClassExecutor",
    "PytestDiscovery",
    "PytestRun",
    "TestLocation",
    "locate_test_class",
    "parse_collected_node_ids",
    "parse_junit_report",
    "run_pytest",
    "split_class_name",
]
