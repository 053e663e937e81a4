from __future__ import annotations

from datetime import datetime, timezone

from healer.memory.history import ExecutionHistory, RemediationHistory
from healer.memory.schema import (
    ExecutionOutcome,
    ModuleNode,
    RemediationOutcome,
    StructureTree,
    TestClassNode,
    TestMethodNode,
)
from healer.memory.store import GraphStore


def _tree() -> StructureTree:
    methods = [
        TestMethodNode(id="tests/test_calc.py::TestCalc::test_add", name="test_add", display_name="test_add"),
        TestMethodNode(id="tests/test_calc.py::TestCalc::test_sub", name="test_sub", display_name="test_sub"),
    ]
    test_class = TestClassNode(
        id="./tests.test_calc.TestCalc",
        fully_qualified_name="tests.test_calc.TestCalc",
        file_path="/repo/tests/test_calc.py",
        test_methods=methods,
    )
    module = ModuleNode(id=".", name="repo", path="/repo", test_classes=[test_class])
    return StructureTree(modules=[module], last_updated=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


def test_graph_roundtrip_preserves_history(tmp_path) -> None:
    store = GraphStore(tmp_path / ".healer")
    tree = _tree()
    tree = store.update_method(
        tree,
        ".",
        "./tests.test_calc.TestCalc",
        "tests/test_calc.py::TestCalc::test_add",
        lambda node: ExecutionHistory().record(node, ExecutionOutcome.FAILURE, duration_ms=12, error_message="boom"),
    )
    tree = store.update_method(
        tree,
        ".",
        "./tests.test_calc.TestCalc",
        "tests/test_calc.py::TestCalc::test_add",
        lambda node: RemediationHistory().record(
            node,
            RemediationOutcome.SUCCESS,
            prompt="fix it",
            changes_applied=["tests/test_calc.py"],
        ),
    )

    path = store.save(tree)
    assert path == store.graph_path
    assert store.exists()

    loaded = store.load()
    assert loaded == tree
    method = loaded.modules[0].test_classes[0].test_methods[0]
    assert method.last_execution.result == ExecutionOutcome.FAILURE
    assert method.last_execution.error_message == "boom"
    assert method.remediation_history[0].changes_applied == ["tests/test_calc.py"]
    # Untouched sibling keeps empty history, not missing fields.
    sibling = loaded.modules[0].test_classes[0].test_methods[1]
    assert sibling.execution_history == []
    assert sibling.last_remediation is None


def test_load_missing_and_corrupt_graph(tmp_path) -> None:
    store = GraphStore(tmp_path / ".healer")
    assert store.load() is None

    store.storage_root.mkdir()
    store.graph_path.write_text("{not json", encoding="utf-8")
    assert store.load() is None

    store.graph_path.write_text('{"modules": [{"id": 1}]}', encoding="utf-8")
    assert store.load() is None


def test_save_replaces_document_without_leftovers(tmp_path) -> None:
    store = GraphStore(tmp_path / ".healer")
    store.save(_tree())
    store.save(StructureTree())

    assert store.load().modules == []
    assert sorted(path.name for path in store.storage_root.iterdir()) == ["test-graph.json"]


def test_archive_never_overwrites(tmp_path) -> None:
    store = GraphStore(tmp_path / ".healer")
    moment = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    first = store.archive(_tree(), timestamp=moment)
    second = store.archive(StructureTree(), timestamp=moment)

    assert first != second
    assert first.exists() and second.exists()
    assert first.name.startswith("test-graph-2024-05-01T12-00-00")
    assert second.stem.endswith("-1")
    assert len(store.list_archives()) == 2
    assert StructureTree.model_validate_json(first.read_text(encoding="utf-8")) == _tree()


def test_update_method_touches_only_addressed_method(tmp_path) -> None:
    tree = _tree()
    updated = GraphStore.update_method(
        tree,
        ".",
        "./tests.test_calc.TestCalc",
        "tests/test_calc.py::TestCalc::test_sub",
        lambda node: ExecutionHistory().record(node, ExecutionOutcome.SUCCESS),
    )

    before = tree.modules[0].test_classes[0].test_methods
    after = updated.modules[0].test_classes[0].test_methods
    assert before[1].last_execution is None
    assert after[1].last_execution.result == ExecutionOutcome.SUCCESS
    assert after[0] is before[0]

    unchanged = GraphStore.update_method(tree, ".", "./other", "missing", lambda node: node)
    assert unchanged == tree


def test_from_config_resolves_relative_storage(tmp_path) -> None:
    store = GraphStore.from_config({"paths": {"storage": "state"}}, tmp_path)
    assert store.storage_root == tmp_path / "state"
    assert not store.storage_root.exists()

    default = GraphStore.from_config({}, tmp_path)
    assert default.storage_root == tmp_path / ".healer"


def test_storage_is_created_only_when_writing(tmp_path) -> None:
    store = GraphStore(tmp_path / ".healer")
    assert store.load() is None
    assert store.list_archives() == []
    assert not store.storage_root.exists()

    store.archive(_tree())
    assert store.archive_root.is_dir()
    assert not store.graph_path.exists()

    store.save(_tree())
    assert store.exists()
