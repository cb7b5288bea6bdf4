"""External tool boundaries used by the step executor."""

from .commands import CommandResult, format_command, run_command
from .coverage_report import parse_failed_tests, parse_lcov_summary
from .fixture_compiler import FixtureCompileResult, FixtureCompiler, fixture_digest
from .formatter import FormatResult, SourceFormatter
from .pipeline import PipelineResult, PipelineRunner, PipelineStage, StageRecord
from .run_logs import RunLogEntry, load_run_log, write_run_log

__all__ = [
    "CommandResult",
    "FixtureCompileResult",
    "FixtureCompiler",
    "FormatResult",
    "PipelineResult",
    "PipelineRunner",
    "PipelineStage",
    "RunLogEntry",
    "SourceFormatter",
    "StageRecord",
    "fixture_digest",
    "format_command",
    "load_run_log",
    "parse_failed_tests",
    "parse_lcov_summary",
    "run_command",
    "write_run_log",
]
