"""Typed records describing the persisted test structure and its history."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field

GRAPH_FORMAT_VERSION = "1.0"


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model; records are immutable once created."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class ExecutionOutcome(str, Enum):
    """Outcome of a single test method execution."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


class RemediationOutcome(str, Enum):
    """Outcome of a single automated repair attempt."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PARTIAL = "PARTIAL"
    SKIPPED = "SKIPPED"


class ExecutionRecord(RecordModel):
    """One recorded execution of a test method."""

    timestamp: datetime = Field(default_factory=utc_now)
    result: ExecutionOutcome
    duration_ms: int = 0
    error_message: Optional[str] = None
    stack_trace: Optional[str] = None
    log_path: Optional[str] = None
    report_path: Optional[str] = None


class RemediationRecord(RecordModel):
    """One recorded repair attempt for a test method."""

    timestamp: datetime = Field(default_factory=utc_now)
    result: RemediationOutcome
    diagnostic_report: str = ""
    workspace_path: str = ""
    prompt: str = ""
    response: str = ""
    changes_applied: List[str] = Field(default_factory=list)
    duration_ms: int = 0


class TestMethodNode(RecordModel):
    """Leaf of the structure tree carrying bounded history."""

    __test__ = False

    id: str
    name: str
    display_name: str
    last_execution: Optional[ExecutionRecord] = None
    last_remediation: Optional[RemediationRecord] = None
    execution_history: List[ExecutionRecord] = Field(default_factory=list)
    remediation_history: List[RemediationRecord] = Field(default_factory=list)


class TestClassNode(RecordModel):
    """Test class discovered inside a module."""

    __test__ = False

    id: str
    fully_qualified_name: str
    file_path: str
    test_methods: List[TestMethodNode] = Field(default_factory=list)
    # Reserved for a dependency-aware scheduler; never populated.
    dependencies: List[str] = Field(default_factory=list)


class ModuleNode(RecordModel):
    """Buildable project module owning a set of test classes."""

    id: str
    name: str
    path: str
    dependencies: List[str] = Field(default_factory=list)
    test_classes: List[TestClassNode] = Field(default_factory=list)


class StructureTree(RecordModel):
    """Root of the module -> class -> method hierarchy."""

    modules: List[ModuleNode] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utc_now)
    version: str = GRAPH_FORMAT_VERSION

    def iter_classes(self) -> Iterator[tuple[ModuleNode, TestClassNode]]:
        for module in self.modules:
            for test_class in module.test_classes:
                yield module, test_class

    def find_class(self, fully_qualified_name: str) -> Optional[tuple[ModuleNode, TestClassNode]]:
        """Return the first ``(module, class)`` pair matching ``fully_qualified_name``."""
        for module, test_class in self.iter_classes():
            if test_class.fully_qualified_name == fully_qualified_name:
                return module, test_class
        return None

    def class_count(self) -> int:
        return sum(len(module.test_classes) for module in self.modules)

    def method_count(self) -> int:
        return sum(len(test_class.test_methods) for _, test_class in self.iter_classes())
