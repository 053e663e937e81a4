"""Repair oracle adapters that propose replacement source for failing tests."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from ..tools.pytest_runner import FailureDetail

__all__ = [
    "CommandRepairOracle",
    "DEFAULT_ORACLE_COMMAND",
    "OracleError",
    "RepairContext",
    "RepairOracle",
    "RepairResult",
    "build_repair_prompt",
    "extract_source",
]

LOGGER = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{prompt}"
DEFAULT_ORACLE_COMMAND: tuple[str, ...] = (
    "gh",
    "copilot",
    "--",
    "-p",
    PROMPT_PLACEHOLDER,
    "--allow-all-tools",
)
_STACKTRACE_LIMIT = 500
_CODE_BLOCK_RE = re.compile(r"```(?:python|py)?[ \t]*\n(.*?)```", re.DOTALL)
_USAGE_FOOTER = "\nTotal usage est:"
_SOURCE_START_RE = re.compile(r"^(?:from\s+\S+\s+import|import\s+\S+|\"\"\"|class\s+\w+|def\s+\w+)", re.MULTILINE)


class OracleError(RuntimeError):
    """Raised when the repair oracle fails or returns nothing usable."""


@dataclass(slots=True)
class RepairContext:
    """Everything the oracle is told about a failing test class."""

    class_name: str
    test_file: Path
    test_source: str
    failures: List[FailureDetail] = field(default_factory=list)


@dataclass(slots=True)
class RepairResult:
    """Replacement source proposed by the oracle."""

    updated_source: str
    raw_output: str
    prompt: str = ""


def build_repair_prompt(context: RepairContext) -> str:
    failures = "\n\n".join(
        "\n".join(
            [
                f"Method: {failure.method}",
                f"Error: {failure.message}",
                "",
                "Stack Trace:",
                failure.stacktrace[:_STACKTRACE_LIMIT],
            ]
        )
        for failure in context.failures
    )
    return f"""Fix the failing Python test class. Return ONLY the corrected file content, nothing else.

Test Class: {context.class_name}
File Path: {context.test_file}

Current Source Code:
```python
{context.test_source}
```

Test Failures:
{failures}

Requirements:
1. Output ONLY the complete fixed Python source code
2. Do not add explanations, markdown formatting, or statistics
3. Do not create new files - just output the corrected source
4. Keep all original test functions and assertions
5. Do not weaken tests by removing assertions
6. Fix only the test code, not production code

Output format: Plain Python source code only."""


def extract_source(output: str) -> str:
    """Pull the proposed file content out of raw oracle output."""
    match = _CODE_BLOCK_RE.search(output)
    if match:
        return match.group(1).strip()

    footer = output.find(_USAGE_FOOTER)
    body = output[:footer] if footer != -1 else output
    start = _SOURCE_START_RE.search(body)
    if start:
        body = body[start.start():]
    return body.strip()


class RepairOracle:
    """Base class for repair oracles."""

    def repair(self, context: RepairContext) -> RepairResult:
        raise NotImplementedError("Subclasses must implement repair().")


class CommandRepairOracle(RepairOracle):
    """Invoke an external command-line agent and parse its output.

    ``command`` is an argument list; the ``{prompt}`` placeholder is replaced by
    the rendered prompt.  When no argument carries the placeholder the prompt
    is written to the process's standard input instead.
    """

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_ORACLE_COMMAND,
        *,
        cwd: Path | str | None = None,
    ) -> None:
        if not command:
            raise ValueError("Oracle command must not be empty")
        self.command = tuple(str(part) for part in command)
        self.cwd = Path(cwd) if cwd is not None else None

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, cwd: Path | str | None = None) -> "CommandRepairOracle":
        oracle_cfg = config.get("oracle") or {}
        command = oracle_cfg.get("command") or DEFAULT_ORACLE_COMMAND
        if isinstance(command, str):
            command = command.split()
        return cls(command, cwd=cwd)

    def _render(self, prompt: str) -> tuple[list[str], Optional[str]]:
        if any(PROMPT_PLACEHOLDER in part for part in self.command):
            return [part.replace(PROMPT_PLACEHOLDER, prompt) for part in self.command], None
        return list(self.command), prompt

    def repair(self, context: RepairContext) -> RepairResult:
        prompt = build_repair_prompt(context)
        args, stdin = self._render(prompt)
        LOGGER.debug("Invoking repair oracle %s for %s", self.command[0], context.class_name)
        try:
            process = subprocess.run(  # noqa: S603 - command sourced from configuration
                args,
                cwd=self.cwd,
                input=stdin,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as error:
            raise OracleError(f"Repair oracle could not be started: {error}") from error

        output = "\n".join(part for part in (process.stdout, process.stderr) if part)
        if process.returncode != 0:
            raise OracleError(f"Repair oracle failed with exit {process.returncode}: {output.strip()}")

        extracted = extract_source(output)
        if not extracted.strip():
            raise OracleError(f"Repair oracle returned empty code. Output: {output.strip()}")

        return RepairResult(updated_source=extracted, raw_output=output, prompt=prompt)
