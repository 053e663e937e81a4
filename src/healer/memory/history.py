"""Bounded execution and remediation ledgers for individual test methods.

Both ledgers follow the same pattern: a new immutable record is stamped,
prepended to the method's history (newest first), the history is truncated to
a fixed cap and the record becomes the method's ``last_*`` value.  Statistics
are computed on demand by scanning the bounded history.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from .schema import (
    ExecutionOutcome,
    ExecutionRecord,
    RemediationOutcome,
    RemediationRecord,
    TestMethodNode,
    utc_now,
)

MAX_EXECUTION_HISTORY = 50
MAX_REMEDIATION_HISTORY = 20

_FAILED_EXECUTIONS = frozenset({ExecutionOutcome.FAILURE, ExecutionOutcome.ERROR})


@dataclass(slots=True, frozen=True)
class ExecutionStats:
    """Aggregate view over a method's execution history."""

    total_executions: int
    success_count: int
    failure_count: int
    error_count: int
    skipped_count: int
    success_rate: float
    average_duration_ms: int
    last_success: Optional[datetime]
    last_failure: Optional[datetime]


@dataclass(slots=True, frozen=True)
class RemediationStats:
    """Aggregate view over a method's remediation history."""

    total_attempts: int
    success_count: int
    failure_count: int
    partial_count: int
    skipped_count: int
    success_rate: float
    average_duration_ms: int
    last_success: Optional[datetime]
    last_failure: Optional[datetime]


def _prepend(record, history: Sequence, limit: int) -> list:
    return [record, *history][:limit]


def _average(values: Iterable[int]) -> int:
    items = list(values)
    if not items:
        return 0
    return int(sum(items) / len(items))


class ExecutionHistory:
    """Ledger of test executions, capped at ``max_entries`` per method."""

    def __init__(self, max_entries: int = MAX_EXECUTION_HISTORY) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries

    def record(
        self,
        method: TestMethodNode,
        result: ExecutionOutcome,
        *,
        duration_ms: int = 0,
        error_message: str | None = None,
        stack_trace: str | None = None,
        log_path: str | None = None,
        report_path: str | None = None,
        timestamp: datetime | None = None,
    ) -> TestMethodNode:
        """Return a copy of ``method`` with a new execution record prepended."""
        record = ExecutionRecord(
            timestamp=timestamp or utc_now(),
            result=result,
            duration_ms=duration_ms,
            error_message=error_message,
            stack_trace=stack_trace,
            log_path=log_path,
            report_path=report_path,
        )
        history = _prepend(record, method.execution_history, self.max_entries)
        return method.model_copy(update={"last_execution": record, "execution_history": history})

    def stats(self, method: TestMethodNode) -> ExecutionStats:
        history = method.execution_history
        counts = {outcome: 0 for outcome in ExecutionOutcome}
        for entry in history:
            counts[entry.result] += 1
        total = len(history)
        return ExecutionStats(
            total_executions=total,
            success_count=counts[ExecutionOutcome.SUCCESS],
            failure_count=counts[ExecutionOutcome.FAILURE],
            error_count=counts[ExecutionOutcome.ERROR],
            skipped_count=counts[ExecutionOutcome.SKIPPED],
            success_rate=(counts[ExecutionOutcome.SUCCESS] / total) if total else 0.0,
            average_duration_ms=_average(entry.duration_ms for entry in history),
            last_success=next(
                (entry.timestamp for entry in history if entry.result == ExecutionOutcome.SUCCESS),
                None,
            ),
            last_failure=next(
                (entry.timestamp for entry in history if entry.result == ExecutionOutcome.FAILURE),
                None,
            ),
        )


class RemediationHistory:
    """Ledger of repair attempts, capped at ``max_entries`` per method."""

    def __init__(self, max_entries: int = MAX_REMEDIATION_HISTORY) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries

    def record(
        self,
        method: TestMethodNode,
        result: RemediationOutcome,
        *,
        diagnostic_report: str = "",
        workspace_path: str = "",
        prompt: str = "",
        response: str = "",
        changes_applied: Sequence[str] = (),
        duration_ms: int = 0,
        timestamp: datetime | None = None,
    ) -> TestMethodNode:
        """Return a copy of ``method`` with a new remediation record prepended."""
        record = RemediationRecord(
            timestamp=timestamp or utc_now(),
            result=result,
            diagnostic_report=diagnostic_report,
            workspace_path=workspace_path,
            prompt=prompt,
            response=response,
            changes_applied=list(changes_applied),
            duration_ms=duration_ms,
        )
        history = _prepend(record, method.remediation_history, self.max_entries)
        return method.model_copy(update={"last_remediation": record, "remediation_history": history})

    def stats(self, method: TestMethodNode) -> RemediationStats:
        history = method.remediation_history
        counts = {outcome: 0 for outcome in RemediationOutcome}
        for entry in history:
            counts[entry.result] += 1
        total = len(history)
        return RemediationStats(
            total_attempts=total,
            success_count=counts[RemediationOutcome.SUCCESS],
            failure_count=counts[RemediationOutcome.FAILURE],
            partial_count=counts[RemediationOutcome.PARTIAL],
            skipped_count=counts[RemediationOutcome.SKIPPED],
            success_rate=(counts[RemediationOutcome.SUCCESS] / total) if total else 0.0,
            average_duration_ms=_average(entry.duration_ms for entry in history),
            last_success=next(
                (entry.timestamp for entry in history if entry.result == RemediationOutcome.SUCCESS),
                None,
            ),
            last_failure=next(
                (entry.timestamp for entry in history if entry.result == RemediationOutcome.FAILURE),
                None,
            ),
        )

    def requires_remediation(self, method: TestMethodNode) -> bool:
        """Return ``True`` when the latest execution failed and no later fix succeeded."""
        last_execution = method.last_execution
        if last_execution is None:
            return False
        if last_execution.result not in _FAILED_EXECUTIONS:
            return False
        last_remediation = method.last_remediation
        if last_remediation is None:
            return True
        # A regression after a successful fix still needs attention.
        return (
            last_remediation.result != RemediationOutcome.SUCCESS
            or last_remediation.timestamp < last_execution.timestamp
        )


__all__ = [
    "ExecutionHistory",
    "ExecutionStats",
    "MAX_EXECUTION_HISTORY",
    "MAX_REMEDIATION_HISTORY",
    "RemediationHistory",
    "RemediationStats",
]
