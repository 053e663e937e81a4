"""Static acceptance rule for automated edits to test files.

The guard compares the original and proposed source of a test module with
regular expressions.  It rejects edits that remove assertions, remove test
functions, or introduce assertions that can never fail.  It is a syntactic
heuristic: replacing a real assertion with an equally weak but
non-tautological one is not detected.
"""

from __future__ import annotations

import re

_ASSERTION_PATTERNS = (
    re.compile(r"^\s*assert\b", re.MULTILINE),
    re.compile(r"\bassert[A-Z]\w*\s*\("),
    re.compile(r"\bpytest\.(?:raises|warns|fail)\s*\("),
)
_TEST_MARKER_RE = re.compile(r"^\s*(?:async\s+)?def\s+test\w*\s*\(", re.MULTILINE)
_TAUTOLOGY_PATTERNS = (
    re.compile(r"^\s*assert\s*\(?\s*(?:True|1|not\s+False|not\s+None)\s*\)?\s*(?:,.*)?$", re.MULTILINE),
    re.compile(r"^\s*assert\s*\(?\s*(True|False|None|-?\d+|'[^']*'|\"[^\"]*\")\s*==\s*\1\s*\)?\s*(?:,.*)?$", re.MULTILINE),
    re.compile(r"\bassertTrue\s*\(\s*True\s*[,)]"),
    re.compile(r"\bassertFalse\s*\(\s*False\s*[,)]"),
    re.compile(r"\bassertEqual\s*\(\s*(True|False|None|-?\d+)\s*,\s*\1\s*[,)]"),
)


class IntegrityViolation(ValueError):
    """Raised when a proposed edit would weaken the test suite."""


def count_assertions(source: str) -> int:
    return sum(len(pattern.findall(source)) for pattern in _ASSERTION_PATTERNS)


def count_test_markers(source: str) -> int:
    return len(_TEST_MARKER_RE.findall(source))


def find_tautology(source: str) -> str | None:
    """Return the first always-true assertion in ``source``, if any."""
    for pattern in _TAUTOLOGY_PATTERNS:
        match = pattern.search(source)
        if match:
            return match.group(0).strip()
    return None


class IntegrityGuard:
    """Reject repairs that shrink coverage or add vacuous assertions."""

    def verify(self, original: str, updated: str) -> None:
        original_assertions = count_assertions(original)
        updated_assertions = count_assertions(updated)
        if updated_assertions < original_assertions:
            raise IntegrityViolation(
                f"Integrity violation: assertion count dropped from {original_assertions} to {updated_assertions}"
            )

        original_tests = count_test_markers(original)
        updated_tests = count_test_markers(updated)
        if updated_tests < original_tests:
            raise IntegrityViolation(
                f"Integrity violation: test count dropped from {original_tests} to {updated_tests}"
            )

        tautology = find_tautology(updated)
        if tautology is not None:
            raise IntegrityViolation(f"Integrity violation: tautological assertion detected: {tautology}")


__all__ = [
    "IntegrityGuard",
    "IntegrityViolation",
    "count_assertions",
    "count_test_markers",
    "find_tautology",
]
