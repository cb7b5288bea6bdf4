"""Parsers for coverage summaries and unit-test runner output."""

from __future__ import annotations

import re
from typing import List, Optional

from ..memory.schema import CoverageCounters

_SUMMARY_RE = re.compile(
    r"^\s*(lines|functions|branches)\.*:\s*[\d.]+%\s*\((\d+)\s+of\s+(\d+)\s+\w+\)",
    re.IGNORECASE | re.MULTILINE,
)
_NO_DATA_RE = re.compile(r"^\s*(lines|functions|branches)\.*:\s*no data found", re.IGNORECASE | re.MULTILINE)
_CTEST_FAILED_HEADER = "The following tests FAILED:"
_CTEST_FAILED_LINE_RE = re.compile(r"^\s*\d+\s*-\s*(\S+)\s*\(([^)]*)\)")
_CTEST_TOTALS_RE = re.compile(r"(\d+)% tests passed,\s*(\d+) tests? failed out of (\d+)")
_GTEST_FAILED_RE = re.compile(r"^\[\s+FAILED\s+\]\s+([A-Za-z_][\w/]*\.[\w/]+)", re.MULTILINE)
_NO_TESTS_RE = re.compile(r"No tests were found", re.IGNORECASE)


def parse_lcov_summary(text: str) -> Optional[CoverageCounters]:
    """Extract counters from ``lcov --summary`` output.

    Returns ``None`` when the line counter is absent, which means lcov
    produced no usable report. Missing function or branch data counts as zero.
    """
    values: dict[str, tuple[int, int]] = {}
    for kind, covered, total in _SUMMARY_RE.findall(text or ""):
        values[kind.lower()] = (int(covered), int(total))
    if "lines" not in values:
        return None
    lines = values["lines"]
    functions = values.get("functions", (0, 0))
    branches = values.get("branches", (0, 0))
    return CoverageCounters(
        lines_covered=lines[0],
        lines_total=lines[1],
        functions_covered=functions[0],
        functions_total=functions[1],
        branches_covered=branches[0],
        branches_total=branches[1],
    )


def missing_summary_kinds(text: str) -> List[str]:
    """Counters lcov reported as ``no data found``."""
    return sorted({match.lower() for match in _NO_DATA_RE.findall(text or "")})


def parse_failed_tests(text: str) -> List[str]:
    """Return failing test names from ctest and gtest output, first occurrence order."""
    names: list[str] = []
    seen: set[str] = set()

    def _add(name: str) -> None:
        if name not in seen:
            seen.add(name)
            names.append(name)

    in_block = False
    for line in (text or "").splitlines():
        if _CTEST_FAILED_HEADER in line:
            in_block = True
            continue
        if in_block:
            match = _CTEST_FAILED_LINE_RE.match(line)
            if match:
                _add(match.group(1))
                continue
            if line.strip():
                in_block = False
    for match in _GTEST_FAILED_RE.finditer(text or ""):
        _add(match.group(1))
    return names


def parse_test_totals(text: str) -> Optional[tuple[int, int]]:
    """Return ``(failed, total)`` from the ctest summary line when present."""
    match = _CTEST_TOTALS_RE.search(text or "")
    if not match:
        return None
    return int(match.group(2)), int(match.group(3))


def no_tests_matched(text: str) -> bool:
    return bool(_NO_TESTS_RE.search(text or ""))


__all__ = [
    "missing_summary_kinds",
    "no_tests_matched",
    "parse_failed_tests",
    "parse_lcov_summary",
    "parse_test_totals",
]
