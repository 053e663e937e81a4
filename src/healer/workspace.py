"""Per-attempt audit directories for automated repairs."""

from __future__ import annotations

import textwrap
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List

from .memory.schema import utc_now

README_NAME = "README.md"
FAILURE_CONTEXT_NAME = "failure-context.txt"
PROMPT_NAME = "oracle-prompt.txt"
RESPONSE_NAME = "oracle-response.txt"
DIAGNOSTIC_NAME = "diagnostic-report.md"
CHANGES_DIRNAME = "applied-changes"
ACTIVITY_LOG = Path("logs") / "activity.log"


@dataclass(slots=True, frozen=True)
class WorkspaceContext:
    """Location and identity of one remediation workspace."""

    path: Path
    class_name: str
    method_name: str
    timestamp: datetime


def workspace_name(class_name: str, method_name: str, timestamp: datetime) -> str:
    simple = class_name.rsplit(".", 1)[-1]
    stamp = timestamp.isoformat().replace(":", "-").replace(".", "-").replace("+", "_")
    safe_method = "".join(char if char.isalnum() or char in "_-" else "-" for char in method_name)
    return f"{simple}_{safe_method}_{stamp}"


class RemediationWorkspace:
    """Create and populate ``remediation/<class>_<method>_<timestamp>`` folders."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def create(
        self,
        class_name: str,
        method_name: str,
        timestamp: datetime | None = None,
    ) -> WorkspaceContext:
        moment = timestamp or utc_now()
        base = workspace_name(class_name, method_name, moment)
        path = self.root / base
        suffix = 1
        while path.exists():
            path = self.root / f"{base}-{suffix}"
            suffix += 1
        path.mkdir(parents=True)
        context = WorkspaceContext(path=path, class_name=class_name, method_name=method_name, timestamp=moment)
        self._write_readme(context)
        return context

    def _write_readme(self, context: WorkspaceContext) -> None:
        readme = textwrap.dedent(
            f"""\
            # Remediation Workspace

            **Test Class**: `{context.class_name}`
            **Test Method**: `{context.method_name}`
            **Created**: {context.timestamp.isoformat()}

            ## Structure
            - `{README_NAME}` - This file
            - `{FAILURE_CONTEXT_NAME}` - Details of the test failure
            - `{PROMPT_NAME}` - The prompt sent to the repair oracle
            - `{RESPONSE_NAME}` - The raw oracle response
            - `{DIAGNOSTIC_NAME}` - Summary of the attempt
            - `{CHANGES_DIRNAME}/` - Files that were modified during remediation
            - `logs/` - Activity log
            """
        )
        (context.path / README_NAME).write_text(readme, encoding="utf-8")

    def save_failure_context(
        self,
        context: WorkspaceContext,
        *,
        error_message: str,
        stack_trace: str,
        test_source: str,
    ) -> Path:
        target = context.path / FAILURE_CONTEXT_NAME
        sections = [
            "=== Test Failure Context ===",
            "",
            f"Class: {context.class_name}",
            f"Method: {context.method_name}",
            "",
            "=== Error Message ===",
            error_message,
            "",
            "=== Stack Trace ===",
            stack_trace,
            "",
            "=== Test Source Code ===",
            test_source,
        ]
        target.write_text("\n".join(sections) + "\n", encoding="utf-8")
        return target

    def save_prompt(self, context: WorkspaceContext, prompt: str) -> Path:
        target = context.path / PROMPT_NAME
        target.write_text(prompt, encoding="utf-8")
        return target

    def save_response(self, context: WorkspaceContext, response: str) -> Path:
        target = context.path / RESPONSE_NAME
        target.write_text(response, encoding="utf-8")
        return target

    def save_diagnostic_report(self, context: WorkspaceContext, report: str) -> Path:
        target = context.path / DIAGNOSTIC_NAME
        target.write_text(report, encoding="utf-8")
        return target

    def save_modified_file(self, context: WorkspaceContext, file_path: Path | str, content: str) -> Path:
        changes = context.path / CHANGES_DIRNAME
        changes.mkdir(parents=True, exist_ok=True)
        target = changes / Path(file_path).name
        target.write_text(content, encoding="utf-8")
        return target

    def log_activity(self, context: WorkspaceContext, message: str) -> None:
        log_path = context.path / ACTIVITY_LOG
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{utc_now().isoformat()}] {message}\n")

    def list_workspaces(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted(path for path in self.root.iterdir() if path.is_dir())


__all__ = ["RemediationWorkspace", "WorkspaceContext", "workspace_name"]
