from __future__ import annotations

from covplan.tools.coverage_report import (
    missing_summary_kinds,
    no_tests_matched,
    parse_failed_tests,
    parse_lcov_summary,
    parse_test_totals,
)

LCOV_SUMMARY = """\
Reading tracefile tests/unit/interpreter/build/coverage.info
Summary coverage rate:
  lines......: 24.7% (1234 of 4996 lines)
  functions..: 31.0% (120 of 387 functions)
  branches...: 12.5% (250 of 2000 branches)
"""

CTEST_OUTPUT = """\
Test project /work/tests/unit/interpreter/build
    Start 1: InterpreterStep2SharedMemory.CasSucceeds
1/3 Test #1: InterpreterStep2SharedMemory.CasSucceeds ....***Failed    0.02 sec
67% tests passed, 1 tests failed out of 3

The following tests FAILED:
\t  1 - InterpreterStep2SharedMemory.CasSucceeds (Failed)
\t  3 - InterpreterStep2SharedMemory.WaitTimesOut (SEGFAULT)
Errors while running CTest
"""


def test_parse_lcov_summary_counters() -> None:
    counters = parse_lcov_summary(LCOV_SUMMARY)

    assert counters is not None
    assert (counters.lines_covered, counters.lines_total) == (1234, 4996)
    assert (counters.functions_covered, counters.functions_total) == (120, 387)
    assert (counters.branches_covered, counters.branches_total) == (250, 2000)
    assert counters.line_percent == 24.7


def test_parse_lcov_summary_without_lines_returns_none() -> None:
    assert parse_lcov_summary("lcov: ERROR: no valid records found in tracefile") is None


def test_missing_branch_data_counts_as_zero() -> None:
    text = "  lines......: 50.0% (5 of 10 lines)\n  branches...: no data found\n"

    counters = parse_lcov_summary(text)

    assert counters.branches_total == 0
    assert missing_summary_kinds(text) == ["branches"]


def test_parse_ctest_failures_and_totals() -> None:
    assert parse_failed_tests(CTEST_OUTPUT) == [
        "InterpreterStep2SharedMemory.CasSucceeds",
        "InterpreterStep2SharedMemory.WaitTimesOut",
    ]
    assert parse_test_totals(CTEST_OUTPUT) == (1, 3)


def test_parse_gtest_failures_are_deduplicated() -> None:
    text = (
        "[  FAILED  ] AotStep1Loader.RejectsBadMagic (0 ms)\n"
        "[  FAILED  ] AotStep1Loader.RejectsTruncated (1 ms)\n"
        "[  FAILED  ] AotStep1Loader.RejectsBadMagic\n"
    )

    assert parse_failed_tests(text) == ["AotStep1Loader.RejectsBadMagic", "AotStep1Loader.RejectsTruncated"]


def test_no_tests_matched() -> None:
    assert no_tests_matched("Test project /tmp/build\nNo tests were found!!!")
    assert not no_tests_matched(CTEST_OUTPUT)
