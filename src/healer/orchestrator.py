"""Persistent self-healing loop around test execution and bounded repair."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from .graph.builder import GraphBuilder
from .graph.merge import merge_history
from .graph.policy import DEFAULT_UPDATE_POLICY, UpdatePolicy
from .memory.history import ExecutionHistory, RemediationHistory
from .memory.schema import (
    ExecutionOutcome,
    RemediationOutcome,
    StructureTree,
    TestClassNode,
    TestMethodNode,
)
from .memory.store import GraphStore
from .models.oracle import OracleError, RepairContext, RepairOracle, build_repair_prompt
from .tools.guard import IntegrityGuard, IntegrityViolation
from .tools.patch import apply_replacement
from .tools.pytest_runner import ClassExecutionResult, ClassExecutor, locate_test_class, split_class_name
from .tools.vcs import SnapshotManager
from .workspace import RemediationWorkspace, WorkspaceContext

LOGGER = logging.getLogger(__name__)

ClassToFile = Callable[[str], Path]

_FAILURE_OUTCOMES = {"failure": ExecutionOutcome.FAILURE, "error": ExecutionOutcome.ERROR}


@dataclass(slots=True)
class OrchestratorSettings:
    """Runtime configuration for the repair loop."""

    max_retry_per_class: int = 3
    # When set, oracle failures and guard rejections consume one attempt
    # instead of aborting the whole run.
    attempt_scoped_failures: bool = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "OrchestratorSettings":
        section = config.get("orchestrator") or {}
        settings = cls()
        if "max_retry_per_class" in section:
            settings.max_retry_per_class = int(section["max_retry_per_class"])
        if "attempt_scoped_failures" in section:
            settings.attempt_scoped_failures = bool(section["attempt_scoped_failures"])
        if settings.max_retry_per_class < 1:
            raise ValueError("orchestrator.max_retry_per_class must be at least 1")
        return settings


@dataclass(slots=True)
class ClassReport:
    """Final state of one requested test class."""

    class_name: str
    result: ClassExecutionResult
    attempts: int = 0
    repaired: bool = False
    rolled_back: bool = False

    @property
    def passed(self) -> bool:
        return self.result.passed


@dataclass(slots=True)
class OrchestratorResult:
    """Aggregated outcome of :meth:`PersistentOrchestrator.run`."""

    class_reports: list[ClassReport]
    graph: StructureTree
    total_remediation_attempts: int = 0
    successful_remediations: int = 0

    @property
    def all_passed(self) -> bool:
        return all(report.passed for report in self.class_reports)

    @property
    def failed_classes(self) -> list[str]:
        return [report.class_name for report in self.class_reports if not report.passed]


@dataclass(slots=True)
class _RunState:
    graph: StructureTree
    reports: list[ClassReport] = field(default_factory=list)
    attempts: int = 0
    successes: int = 0


class PersistentOrchestrator:
    """Coordinate graph maintenance, test execution and bounded repair."""

    def __init__(
        self,
        *,
        project_root: Path | str,
        executor: ClassExecutor,
        oracle: RepairOracle,
        snapshots: SnapshotManager,
        store: GraphStore,
        builder: GraphBuilder,
        guard: IntegrityGuard | None = None,
        policy: UpdatePolicy = DEFAULT_UPDATE_POLICY,
        settings: OrchestratorSettings | None = None,
        execution_history: ExecutionHistory | None = None,
        remediation_history: RemediationHistory | None = None,
        workspace: RemediationWorkspace | None = None,
        apply_patch: Callable[[Path, str], Any] = apply_replacement,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.executor = executor
        self.oracle = oracle
        self.snapshots = snapshots
        self.store = store
        self.builder = builder
        self.guard = guard or IntegrityGuard()
        self.policy = policy
        self.settings = settings or OrchestratorSettings()
        self.execution_history = execution_history or ExecutionHistory()
        self.remediation_history = remediation_history or RemediationHistory()
        self.workspace = workspace or RemediationWorkspace(store.storage_root / "remediation")
        self._apply_patch = apply_patch

    # ---------------------------------------------------------------- graph
    def load_or_build(self) -> StructureTree:
        """Load the persisted tree, rebuilding and merging when the policy asks."""
        existing = self.store.load()
        if not self.policy.should_rebuild(existing, self.project_root):
            LOGGER.info("Reusing persisted test graph from %s", existing.last_updated.isoformat())
            return existing

        LOGGER.info("Building test graph for %s", self.project_root)
        fresh = self.builder.build()
        graph = merge_history(fresh, existing) if existing is not None else fresh
        self.store.save(graph)
        return graph

    def resolve_test_file(self, graph: StructureTree, class_name: str) -> Path:
        found = graph.find_class(class_name)
        if found is not None:
            return Path(found[1].file_path)
        try:
            location = locate_test_class(self.project_root, class_name)
            relative, _ = split_class_name(class_name)
        except ValueError:
            return self.project_root / class_name
        if location is not None:
            return location.file_path
        return self.project_root / relative

    # ------------------------------------------------------------------ run
    def run(self, class_names: Iterable[str], class_to_file: ClassToFile | None = None) -> OrchestratorResult:
        started = time.monotonic()
        state = _RunState(graph=self.load_or_build())
        LOGGER.info(
            "Graph loaded: %d module(s), %d test class(es)",
            len(state.graph.modules),
            state.graph.class_count(),
        )
        resolve = class_to_file or (lambda name: self.resolve_test_file(state.graph, name))

        try:
            for class_name in sorted(class_names):
                self._process_class(state, class_name, resolve)
        except Exception:
            # Keep every recorded attempt even though the batch is aborted.
            self.store.save(state.graph)
            raise

        self.store.save(state.graph)
        self.store.archive(state.graph)

        result = OrchestratorResult(
            class_reports=state.reports,
            graph=state.graph,
            total_remediation_attempts=state.attempts,
            successful_remediations=state.successes,
        )
        LOGGER.info(
            "Orchestrator completed in %.1fs: %d passed, %d failed, %d remediation attempt(s), %d successful",
            time.monotonic() - started,
            sum(1 for report in result.class_reports if report.passed),
            len(result.failed_classes),
            result.total_remediation_attempts,
            result.successful_remediations,
        )
        return result

    def _process_class(self, state: _RunState, class_name: str, resolve: ClassToFile) -> None:
        LOGGER.info("Executing %s", class_name)
        result = self.executor.execute(class_name)
        state.graph = self.record_execution(state.graph, class_name, result)
        report = ClassReport(class_name=class_name, result=result)
        state.reports.append(report)

        if result.passed:
            LOGGER.info("All tests passed in %s", class_name)
            return

        test_file = Path(resolve(class_name))
        if not test_file.is_file():
            LOGGER.error("Cannot repair %s: test file %s does not exist", class_name, test_file)
            return

        original_source = test_file.read_text(encoding="utf-8")
        self.snapshots.snapshot(f"pre-repair snapshot for {class_name}")

        budget = self.settings.max_retry_per_class
        for attempt in range(1, budget + 1):
            LOGGER.info("Remediation attempt %d/%d for %s", attempt, budget, class_name)
            state.attempts += 1
            report.attempts = attempt
            result = self._attempt_repair(state, class_name, test_file, original_source, result, attempt)
            report.result = result
            if result.passed:
                LOGGER.info("Remediation of %s succeeded on attempt %d", class_name, attempt)
                report.repaired = True
                state.successes += 1
                return
            LOGGER.info("%s still failing: %d test(s)", class_name, len(result.failures))

        LOGGER.warning("Failed to repair %s after %d attempt(s); rolling back", class_name, budget)
        self.snapshots.rollback()
        report.rolled_back = True

    def _attempt_repair(
        self,
        state: _RunState,
        class_name: str,
        test_file: Path,
        original_source: str,
        failing: ClassExecutionResult,
        attempt: int,
    ) -> ClassExecutionResult:
        """Run one request/validate/apply/re-execute cycle and record it."""

        primary = failing.failures[0]
        targets = [failure.method for failure in failing.failures]
        context = self.workspace.create(class_name, primary.method)
        current_source = test_file.read_text(encoding="utf-8")
        self.workspace.save_failure_context(
            context,
            error_message=primary.message,
            stack_trace=primary.stacktrace,
            test_source=current_source,
        )
        self.workspace.log_activity(context, f"Starting remediation attempt {attempt}")

        repair_context = RepairContext(
            class_name=class_name,
            test_file=test_file,
            test_source=current_source,
            failures=list(failing.failures),
        )
        prompt = build_repair_prompt(repair_context)
        self.workspace.save_prompt(context, prompt)

        started = time.monotonic()
        response = ""
        try:
            repair = self.oracle.repair(repair_context)
            response = repair.raw_output
            self.workspace.save_response(context, response)
            self.guard.verify(original_source, repair.updated_source)
        except (OracleError, IntegrityViolation) as error:
            self._reject_attempt(state, context, class_name, targets, prompt, response, error, started, attempt)
            if not self.settings.attempt_scoped_failures:
                raise
            return failing

        self._apply_patch(test_file, repair.updated_source)
        self.snapshots.stage(test_file)
        self.workspace.save_modified_file(context, test_file, repair.updated_source)
        duration_ms = int((time.monotonic() - started) * 1000)

        result = self.executor.execute(class_name)
        outcome = RemediationOutcome.SUCCESS if result.passed else RemediationOutcome.FAILURE
        report = _diagnostic_report(class_name, attempt, failing, result)
        self.workspace.save_diagnostic_report(context, report)
        state.graph = self.record_remediation(
            state.graph,
            class_name,
            targets,
            outcome,
            diagnostic_report=report,
            workspace_path=context.path.as_posix(),
            prompt=prompt,
            response=response,
            changes_applied=[test_file.as_posix()],
            duration_ms=duration_ms,
        )
        state.graph = self.record_execution(state.graph, class_name, result)
        self.workspace.log_activity(context, f"Remediation {'succeeded' if result.passed else 'failed'}")
        return result

    def _reject_attempt(
        self,
        state: _RunState,
        context: WorkspaceContext,
        class_name: str,
        targets: Sequence[str],
        prompt: str,
        response: str,
        error: Exception,
        started: float,
        attempt: int,
    ) -> None:
        LOGGER.error("Remediation attempt %d for %s rejected: %s", attempt, class_name, error)
        report = f"# Remediation attempt {attempt} for `{class_name}`\n\nRejected: {error}\n"
        self.workspace.save_diagnostic_report(context, report)
        self.workspace.log_activity(context, f"Remediation rejected: {error}")
        state.graph = self.record_remediation(
            state.graph,
            class_name,
            targets,
            RemediationOutcome.FAILURE,
            diagnostic_report=report,
            workspace_path=context.path.as_posix(),
            prompt=prompt,
            response=response,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # ------------------------------------------------------------ recording
    def _locate(self, graph: StructureTree, class_name: str) -> tuple[str, TestClassNode] | None:
        found = graph.find_class(class_name)
        if found is None:
            LOGGER.warning("%s is not part of the test graph; results are not recorded", class_name)
            return None
        module, test_class = found
        return module.id, test_class

    def record_execution(
        self,
        graph: StructureTree,
        class_name: str,
        result: ClassExecutionResult,
    ) -> StructureTree:
        """Record one execution per known method of ``class_name``."""
        located = self._locate(graph, class_name)
        if located is None:
            return graph
        module_id, test_class = located
        known = {method.name for method in test_class.test_methods}
        # Collection and import errors are reported under the module or class
        # name; they apply to every method of the class.
        class_level = next((failure for failure in result.failures if failure.method not in known), None)

        for method in test_class.test_methods:
            failure = result.failure_for(method.name) or class_level
            if failure is not None:
                outcome = _FAILURE_OUTCOMES.get(failure.kind, ExecutionOutcome.FAILURE)
            elif method.name in result.skipped:
                outcome = ExecutionOutcome.SKIPPED
            else:
                outcome = ExecutionOutcome.SUCCESS

            def transform(node: TestMethodNode, outcome=outcome, failure=failure) -> TestMethodNode:
                return self.execution_history.record(
                    node,
                    outcome,
                    duration_ms=result.durations.get(node.name, 0),
                    error_message=failure.message if failure else None,
                    stack_trace=failure.stacktrace if failure else None,
                )

            graph = self.store.update_method(graph, module_id, test_class.id, method.id, transform)
        return graph

    def record_remediation(
        self,
        graph: StructureTree,
        class_name: str,
        method_names: Sequence[str],
        outcome: RemediationOutcome,
        **metadata: Any,
    ) -> StructureTree:
        """Record a repair attempt against the methods that were failing."""
        located = self._locate(graph, class_name)
        if located is None:
            return graph
        module_id, test_class = located
        wanted = set(method_names)
        targets = [method for method in test_class.test_methods if method.name in wanted]
        if not targets:
            # Class-level failure: the attempt concerns every method.
            targets = list(test_class.test_methods)

        for method in targets:
            graph = self.store.update_method(
                graph,
                module_id,
                test_class.id,
                method.id,
                lambda node: self.remediation_history.record(node, outcome, **metadata),
            )
        return graph


def _diagnostic_report(
    class_name: str,
    attempt: int,
    before: ClassExecutionResult,
    after: ClassExecutionResult,
) -> str:
    lines = [
        f"# Remediation attempt {attempt} for `{class_name}`",
        "",
        f"Failing before: {len(before.failures)}",
        f"Failing after: {len(after.failures)}",
        f"Outcome: {'passed' if after.passed else 'still failing'}",
    ]
    if after.failures:
        lines.append("")
        lines.append("## Remaining failures")
        lines.extend(f"- `{failure.method}`: {failure.message}" for failure in after.failures)
    return "\n".join(lines) + "\n"


__all__ = ["ClassReport", "OrchestratorResult", "OrchestratorSettings", "PersistentOrchestrator"]
