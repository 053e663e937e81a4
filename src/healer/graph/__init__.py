"""Structure-tree maintenance: build, merge and rebuild policies."""

from .builder import GraphBuilder
from .merge import merge_history
from .policy import (
    DEFAULT_UPDATE_POLICY,
    AlwaysRebuild,
    AnyOf,
    BuildDescriptorModified,
    NeverRebuild,
    OlderThan,
    TestFilesModified,
    UpdatePolicy,
    policy_from_config,
)

__all__ = [
    "AlwaysRebuild",
    "AnyOf",
    "BuildDescriptorModified",
    "DEFAULT_UPDATE_POLICY",
    "GraphBuilder",
    "NeverRebuild",
    "OlderThan",
    "TestFilesModified",
    "UpdatePolicy",
    "merge_history",
    "policy_from_config",
]
