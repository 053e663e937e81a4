"""Convenience exports for repair oracle implementations."""

from .oracle import (
    CommandRepairOracle,
    OracleError,
    RepairContext,
    RepairOracle,
    RepairResult,
)

__all__ = [
    "CommandRepairOracle",
    "OracleError",
    "RepairContext",
    "RepairOracle",
    "RepairResult",
]
