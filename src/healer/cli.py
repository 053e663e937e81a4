"""CLI commands for running the self-healing test loop and inspecting its history."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from .graph.builder import GraphBuilder
from .graph.merge import merge_history
from .graph.policy import AlwaysRebuild, policy_from_config
from .memory.history import ExecutionHistory, RemediationHistory
from .memory.store import GraphStore
from .models.oracle import DEFAULT_ORACLE_COMMAND, CommandRepairOracle, OracleError
from .orchestrator import OrchestratorResult, OrchestratorSettings, PersistentOrchestrator
from .tools.guard import IntegrityViolation
from .tools.patch import PatchError
from .tools.pytest_runner import PytestClassExecutor, PytestDiscovery
from .tools.vcs import GitError, SnapshotManager

APP_HELP = "Self-healing test orchestrator with persistent execution history."
DEFAULT_CONFIG_NAME = "healer.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "orchestrator": {
        "max_retry_per_class": 3,
        "attempt_scoped_failures": False,
    },
    "graph": {
        "update_policy": ["build-descriptor-modified", "older-than"],
        "max_age_hours": 24,
    },
    "oracle": {
        "command": list(DEFAULT_ORACLE_COMMAND),
    },
    "pytest": {
        "args": [],
    },
    "paths": {
        "storage": ".healer",
    },
}

app = typer.Typer(help=APP_HELP)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration merged over the defaults; a missing file means defaults."""
    if not config_path.exists():
        return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return _deep_merge(DEFAULT_CONFIG_TEMPLATE, data)


def _resolve_project(project_root: Optional[Path], config: Optional[Path]) -> tuple[Path, Dict[str, Any]]:
    root = (project_root or Path.cwd()).resolve()
    if not root.is_dir():
        raise typer.BadParameter(f"Project root does not exist: {root}")
    config_path = config if config is not None else root / DEFAULT_CONFIG_NAME
    return root, load_config(config_path)


def build_orchestrator(
    root: Path,
    config: Dict[str, Any],
    *,
    force_rebuild: bool = False,
) -> PersistentOrchestrator:
    """Wire the production collaborators for ``root`` from ``config``."""
    pytest_args = (config.get("pytest") or {}).get("args") or []
    store = GraphStore.from_config(config, root)
    try:
        policy = AlwaysRebuild() if force_rebuild else policy_from_config(config)
        settings = OrchestratorSettings.from_config(config)
    except ValueError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1) from error
    return PersistentOrchestrator(
        project_root=root,
        executor=PytestClassExecutor(root, extra_args=pytest_args),
        oracle=CommandRepairOracle.from_config(config, cwd=root),
        snapshots=SnapshotManager.for_path(root),
        store=store,
        builder=GraphBuilder(root, PytestDiscovery(root)),
        policy=policy,
        settings=settings,
    )


def _render_summary(result: OrchestratorResult, storage_root: Path) -> None:
    typer.echo("")
    typer.echo("=== Summary ===")
    typer.echo(f"- Classes: {len(result.class_reports)}")
    typer.echo(f"- Passed: {sum(1 for report in result.class_reports if report.passed)}")
    typer.echo(f"- Failed: {len(result.failed_classes)}")
    typer.echo(f"- Remediation attempts: {result.total_remediation_attempts}")
    typer.echo(f"- Successful remediations: {result.successful_remediations}")
    for report in result.class_reports:
        if report.passed:
            suffix = f" (repaired after {report.attempts} attempt(s))" if report.repaired else ""
            typer.echo(f"  PASS {report.class_name}{suffix}")
        else:
            rolled = ", rolled back" if report.rolled_back else ""
            typer.echo(f"  FAIL {report.class_name}: {len(report.result.failures)} failure(s){rolled}")
    typer.echo(f"Persistence location: {storage_root.as_posix()}")


@app.callback()
def main(
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Logging level for orchestrator diagnostics.",
    ),
) -> None:
    """Configure logging before dispatching to a command."""
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command()
def run(
    classes: List[str] = typer.Argument(..., help="Fully-qualified test class names to execute."),
    project_root: Optional[Path] = typer.Option(
        None,
        "--project-root",
        "-p",
        help="Root directory of the project (default: current directory).",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the healer configuration file.",
    ),
    max_retries: Optional[int] = typer.Option(
        None,
        "--max-retries",
        min=1,
        help="Override orchestrator.max_retry_per_class.",
    ),
    rebuild: bool = typer.Option(False, "--rebuild", help="Rebuild the test graph regardless of policy."),
) -> None:
    """Execute test classes and repair failures within a bounded budget."""
    root, config_data = _resolve_project(project_root, config)
    if max_retries is not None:
        config_data.setdefault("orchestrator", {})["max_retry_per_class"] = max_retries

    typer.echo(f"Project root: {root}")
    typer.echo(f"Test classes: {', '.join(classes)}")
    try:
        orchestrator = build_orchestrator(root, config_data, force_rebuild=rebuild)
        result = orchestrator.run(classes)
    except (GitError, OracleError, IntegrityViolation, PatchError) as error:
        typer.echo(f"Aborted: {error}")
        raise typer.Exit(code=1) from error

    _render_summary(result, orchestrator.store.storage_root)
    if not result.all_passed:
        raise typer.Exit(code=1)


@app.command()
def init(
    project_root: Optional[Path] = typer.Option(None, "--project-root", "-p", help="Project directory."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    root = (project_root or Path.cwd()).resolve()
    target = root / DEFAULT_CONFIG_NAME
    if target.exists() and not force:
        typer.echo(f"Configuration already exists at {target}; use --force to overwrite.")
        raise typer.Exit(code=1)
    target.write_text(yaml.safe_dump(DEFAULT_CONFIG_TEMPLATE, sort_keys=False), encoding="utf-8")
    typer.echo(f"Wrote {target}")


@app.command()
def graph(
    project_root: Optional[Path] = typer.Option(None, "--project-root", "-p", help="Project directory."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file."),
    rebuild: bool = typer.Option(False, "--rebuild", help="Rebuild the structure regardless of policy."),
) -> None:
    """Load or rebuild the test graph and print its structure."""
    root, config_data = _resolve_project(project_root, config)
    store = GraphStore.from_config(config_data, root)
    try:
        policy = AlwaysRebuild() if rebuild else policy_from_config(config_data)
    except ValueError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1) from error
    existing = store.load()
    if policy.should_rebuild(existing, root):
        fresh = GraphBuilder(root, PytestDiscovery(root)).build()
        tree = merge_history(fresh, existing) if existing is not None else fresh
        store.save(tree)
        typer.echo("Rebuilt test graph.")
    else:
        tree = existing

    typer.echo(
        f"Modules: {len(tree.modules)} | classes: {tree.class_count()} | methods: {tree.method_count()}"
    )
    for module in tree.modules:
        typer.echo(f"- {module.id}")
        for test_class in module.test_classes:
            typer.echo(f"  - {test_class.fully_qualified_name} ({len(test_class.test_methods)} method(s))")


@app.command()
def history(
    class_name: str = typer.Argument(..., help="Fully-qualified test class name."),
    project_root: Optional[Path] = typer.Option(None, "--project-root", "-p", help="Project directory."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file."),
) -> None:
    """Show execution and remediation statistics for a test class."""
    root, config_data = _resolve_project(project_root, config)
    tree = GraphStore.from_config(config_data, root).load()
    if tree is None:
        typer.echo("No test graph has been recorded yet.")
        raise typer.Exit(code=1)
    found = tree.find_class(class_name)
    if found is None:
        typer.echo(f"{class_name} is not part of the test graph.")
        raise typer.Exit(code=1)

    executions = ExecutionHistory()
    remediations = RemediationHistory()
    _, test_class = found
    typer.echo(f"{test_class.fully_qualified_name} ({test_class.file_path})")
    for method in test_class.test_methods:
        exec_stats = executions.stats(method)
        fix_stats = remediations.stats(method)
        last = method.last_execution.result.value if method.last_execution else "never run"
        flag = " [needs remediation]" if remediations.requires_remediation(method) else ""
        typer.echo(f"- {method.name}: last={last}{flag}")
        typer.echo(
            f"  executions {exec_stats.total_executions} | success rate {exec_stats.success_rate:.0%}"
            f" | avg {exec_stats.average_duration_ms} ms"
        )
        typer.echo(
            f"  remediations {fix_stats.total_attempts} | success rate {fix_stats.success_rate:.0%}"
        )


if __name__ == "__main__":
    app()
