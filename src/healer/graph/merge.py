"""Carry history from a previously persisted tree onto a freshly built one."""

from __future__ import annotations

from ..memory.schema import StructureTree, TestMethodNode

HISTORY_FIELDS = ("last_execution", "last_remediation", "execution_history", "remediation_history")


def _graft(new_method: TestMethodNode, old_method: TestMethodNode) -> TestMethodNode:
    return new_method.model_copy(
        update={name: getattr(old_method, name) for name in HISTORY_FIELDS}
    )


def merge_history(new: StructureTree, old: StructureTree) -> StructureTree:
    """Return ``new`` with the history of identically-identified ``old`` methods.

    Matching is by identifier at every level.  Nodes that only exist in
    ``old`` are dropped together with their history.
    """

    old_modules = {module.id: module for module in old.modules}
    merged_modules = []
    for module in new.modules:
        old_module = old_modules.get(module.id)
        if old_module is None:
            merged_modules.append(module)
            continue
        old_classes = {test_class.id: test_class for test_class in old_module.test_classes}
        merged_classes = []
        for test_class in module.test_classes:
            old_class = old_classes.get(test_class.id)
            if old_class is None:
                merged_classes.append(test_class)
                continue
            old_methods = {method.id: method for method in old_class.test_methods}
            merged_methods = [
                _graft(method, old_methods[method.id]) if method.id in old_methods else method
                for method in test_class.test_methods
            ]
            merged_classes.append(test_class.model_copy(update={"test_methods": merged_methods}))
        merged_modules.append(module.model_copy(update={"test_classes": merged_classes}))
    return new.model_copy(update={"modules": merged_modules})


__all__ = ["HISTORY_FIELDS", "merge_history"]
