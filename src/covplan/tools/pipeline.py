"""Build → test → coverage pipeline for a single plan step."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import PipelineSettings, Settings
from ..errors import STEP_FAILURE_TYPES, EnvironmentFailure, StepFailure
from ..memory.schema import CoverageCounters, Plan, Step
from ..utils.slug import default_test_pattern
from .commands import CommandResult, format_command, run_command
from .coverage_report import (
    missing_summary_kinds,
    no_tests_matched,
    parse_failed_tests,
    parse_lcov_summary,
    parse_test_totals,
)

LOGGER = logging.getLogger(__name__)

COVERAGE_FILE_NAME = "coverage.info"

CommandRunner = Callable[..., CommandResult]


class PipelineStage(str, Enum):
    CLEAN = "clean"
    CONFIGURE = "configure"
    BUILD = "build"
    TEST = "test"
    COVERAGE = "coverage"


_FAILURE_KINDS: Dict[PipelineStage, str] = {
    PipelineStage.CONFIGURE: "configure",
    PipelineStage.BUILD: "compile",
    PipelineStage.TEST: "test",
    PipelineStage.COVERAGE: "coverage",
}


@dataclass(slots=True)
class StageRecord:
    """One executed command within a pipeline run."""

    stage: PipelineStage
    command: tuple[str, ...]
    exit_code: int
    duration: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "command": list(self.command),
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
        }


@dataclass(slots=True)
class PipelineResult:
    """Outcome of a pipeline run; persisted only as part of a run artifact."""

    step_ordinal: int
    ok: bool
    failed_stage: Optional[PipelineStage] = None
    failure_kind: Optional[str] = None
    diagnostics: str = ""
    failed_tests: List[str] = field(default_factory=list)
    coverage: Optional[CoverageCounters] = None
    commands: List[StageRecord] = field(default_factory=list)

    def to_failure(self) -> StepFailure:
        """Translate an unsuccessful result into the matching :class:`StepFailure`."""
        if self.ok:
            raise ValueError("successful pipeline results carry no failure")
        failure_cls = STEP_FAILURE_TYPES.get(self.failure_kind or "", StepFailure)
        stage = self.failed_stage.value if self.failed_stage else None
        return failure_cls(self.diagnostics, stage=stage)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "step": self.step_ordinal,
            "ok": self.ok,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "failure_kind": self.failure_kind,
            "failed_tests": list(self.failed_tests),
            "coverage": self.coverage.model_dump(mode="json") if self.coverage else None,
            "commands": [record.to_payload() for record in self.commands],
            "diagnostics": self.diagnostics,
        }


class PipelineRunner:
    """Run the configured CMake/ctest/lcov commands for one step."""

    def __init__(self, settings: PipelineSettings | None = None, *, runner: CommandRunner | None = None) -> None:
        self.settings = settings or Settings.from_config({}).pipeline
        self._run = runner or run_command

    @classmethod
    def from_config(cls, config: Any) -> "PipelineRunner":
        settings = config if isinstance(config, Settings) else Settings.from_config(config)
        return cls(settings.pipeline)

    # ---------------------------------------------------------------- layout
    def placeholders(self, plan: Plan, step: Step) -> Dict[str, str]:
        source_root = Path(self.settings.source_root)
        test_dir = Path(plan.test_dir) if plan.test_dir else Path("tests/unit") / plan.module
        if not test_dir.is_absolute():
            test_dir = source_root / test_dir
        build_dir = Path(self.settings.build_dir.format(module=plan.module))
        if not build_dir.is_absolute():
            build_dir = source_root / build_dir
        return {
            "module": plan.module,
            "source_root": str(source_root),
            "test_dir": str(test_dir),
            "build_dir": str(build_dir),
            "pattern": step.test_pattern or default_test_pattern(plan.module, step.ordinal, step.name),
            "coverage_file": str(build_dir / COVERAGE_FILE_NAME),
            "coverage_flag": self.settings.coverage_flag,
        }

    # ------------------------------------------------------------------- run
    def run(self, plan: Plan, step: Step) -> PipelineResult:
        """Execute clean, configure, build, test and coverage capture in order.

        Ordinary build and test failures are returned as an unsuccessful
        result. Missing tools, timeouts and filesystem errors raise
        :class:`EnvironmentFailure`.
        """
        values = self.placeholders(plan, step)
        result = PipelineResult(step_ordinal=step.ordinal, ok=False)
        LOGGER.info("Pipeline for %s step %s (pattern %s)", plan.module, step.ordinal, values["pattern"])

        self._clean(Path(values["build_dir"]))

        for stage, template in (
            (PipelineStage.CONFIGURE, self.settings.configure),
            (PipelineStage.BUILD, self.settings.build),
        ):
            outcome = self._execute(stage, template, values, result)
            if not outcome.ok:
                return self._fail(result, stage, outcome.output)

        outcome = self._execute(PipelineStage.TEST, self.settings.test, values, result)
        output = outcome.output
        if not outcome.ok:
            result.failed_tests = parse_failed_tests(output)
            return self._fail(result, PipelineStage.TEST, output)
        if no_tests_matched(output):
            return self._fail(result, PipelineStage.TEST, output)
        totals = parse_test_totals(output)
        if totals is not None:
            LOGGER.info("Step %s tests passed (%s run)", step.ordinal, totals[1])

        capture = self._execute(PipelineStage.COVERAGE, self.settings.coverage_capture, values, result)
        if not capture.ok:
            return self._fail(result, PipelineStage.COVERAGE, capture.output)
        summary = self._execute(PipelineStage.COVERAGE, self.settings.coverage_summary, values, result)
        counters = parse_lcov_summary(summary.output) if summary.ok else None
        if counters is None:
            return self._fail(result, PipelineStage.COVERAGE, summary.output or "coverage summary unavailable")
        missing = missing_summary_kinds(summary.output)
        if missing:
            LOGGER.debug("Coverage summary has no data for: %s", ", ".join(missing))

        result.ok = True
        result.coverage = counters
        LOGGER.info(
            "Step %s coverage: lines %.2f%%, functions %.2f%%, branches %.2f%%",
            step.ordinal,
            counters.line_percent,
            counters.function_percent,
            counters.branch_percent,
        )
        return result

    def _clean(self, build_dir: Path) -> None:
        if not build_dir.exists():
            return
        try:
            shutil.rmtree(build_dir)
        except OSError as error:
            raise EnvironmentFailure(
                f"Failed to remove build directory {build_dir}: {error}", stage=PipelineStage.CLEAN.value
            ) from error

    def _execute(
        self,
        stage: PipelineStage,
        template: Sequence[str],
        values: Dict[str, str],
        result: PipelineResult,
    ) -> CommandResult:
        if not template:
            raise EnvironmentFailure(f"No command configured for pipeline stage {stage.value}", stage=stage.value)
        try:
            command = format_command(template, values)
        except KeyError as error:
            raise EnvironmentFailure(str(error), stage=stage.value) from error
        outcome = self._run(
            command,
            cwd=values["source_root"],
            timeout=self.settings.timeout_seconds,
            stage=stage.value,
        )
        result.commands.append(
            StageRecord(stage=stage, command=outcome.command, exit_code=outcome.exit_code, duration=outcome.duration)
        )
        return outcome

    @staticmethod
    def _fail(result: PipelineResult, stage: PipelineStage, diagnostics: str) -> PipelineResult:
        result.ok = False
        result.failed_stage = stage
        result.failure_kind = _FAILURE_KINDS[stage]
        result.diagnostics = diagnostics
        LOGGER.info("Pipeline failed at %s stage", stage.value)
        return result


__all__ = [
    "COVERAGE_FILE_NAME",
    "PipelineResult",
    "PipelineRunner",
    "PipelineStage",
    "StageRecord",
]
