"""Drive a single plan step through fixture prep, code generation, pipeline and diagnose."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ..config import Settings
from ..errors import (
    CovplanError,
    EnvironmentFailure,
    FixtureCompileFailure,
    OperationCancelled,
    StepFailure,
    UnresolvedDiagnostic,
)
from ..memory.knowledge import KnowledgeBase
from ..memory.plan_store import PlanStore, validate_transition
from ..memory.schema import Fixture, Plan, Step, StepFailureRecord, StepStatus
from ..phases import StepPhase
from ..phases.codegen import (
    CodeGenerator,
    CodeGenRequest,
    FixtureSourceRequest,
    build_code_generator,
    fixture_handle,
    write_generated_files,
)
from ..phases.diagnose import DiagnoseRequest, DiagnoseResponse, Diagnoser, build_signature
from ..tools.fixture_compiler import FixtureCompiler
from ..tools.formatter import SourceFormatter
from ..tools.pipeline import PipelineResult, PipelineRunner
from ..tools.run_logs import write_run_log
from ..utils.fs import atomic_write_text
from .fixtures import assign_fixtures, decide_step_fixtures

LOGGER = logging.getLogger(__name__)

_EXCERPT_LINES = 40


class CancellationToken:
    """Cooperative abort flag honoured at step state transitions."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled by operator")


@dataclass(slots=True)
class DiagnoseAttempt:
    attempt: int
    phase: StepPhase
    kind: str
    signature: str
    matched_entry: Optional[str]
    reentry: StepPhase
    response: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "phase": self.phase.value,
            "kind": self.kind,
            "signature": self.signature,
            "matched_entry": self.matched_entry,
            "reentry": self.reentry.value,
            "response": dict(self.response),
        }


@dataclass(slots=True)
class StepOutcome:
    """Result of executing one step; the plan document already reflects it."""

    ordinal: int
    name: str
    status: StepStatus
    pipeline_runs: List[PipelineResult] = field(default_factory=list)
    diagnose_attempts: List[DiagnoseAttempt] = field(default_factory=list)
    unmatched_signatures: List[str] = field(default_factory=list)
    touched_files: List[Path] = field(default_factory=list)
    coverage_updated: bool = False
    error: Optional[CovplanError] = None
    artifact_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @property
    def last_pipeline(self) -> Optional[PipelineResult]:
        return self.pipeline_runs[-1] if self.pipeline_runs else None


def _excerpt(diagnostics: str) -> str:
    lines = diagnostics.strip().splitlines()
    return "\n".join(lines[-_EXCERPT_LINES:])


class StepExecutor:
    """Execute one step end-to-end and commit its status through the plan store."""

    def __init__(
        self,
        store: PlanStore,
        *,
        settings: Settings | None = None,
        knowledge: KnowledgeBase | None = None,
        pipeline: PipelineRunner | None = None,
        fixture_compiler: FixtureCompiler | None = None,
        code_generator: CodeGenerator | None = None,
        formatter: SourceFormatter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or Settings.from_config({})
        self.source_root = Path(self.settings.pipeline.source_root)
        self.knowledge = knowledge if knowledge is not None else KnowledgeBase(None)
        self.pipeline = pipeline or PipelineRunner(self.settings.pipeline)
        self.fixture_compiler = fixture_compiler or FixtureCompiler.from_settings(self.settings.fixtures)
        self.code_generator = code_generator or build_code_generator(self.settings.codegen, cwd=self.source_root)
        self.formatter = formatter or SourceFormatter(self.settings.formatter)
        self.cancel_token = cancel_token or CancellationToken()
        self.diagnoser = Diagnoser(
            self.knowledge,
            source_root=self.source_root,
            command_timeout=self.settings.diagnose.command_timeout_seconds,
        )

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        store: PlanStore | None = None,
        knowledge: KnowledgeBase | None = None,
        cancel_token: CancellationToken | None = None,
        base_dir: Path | None = None,
    ) -> "StepExecutor":
        return cls(
            store or PlanStore.from_config(config),
            settings=Settings.from_config(config, base_dir=base_dir),
            knowledge=knowledge if knowledge is not None else KnowledgeBase.from_config(config),
            cancel_token=cancel_token,
        )

    # ------------------------------------------------------------------ public
    def run(self, plan: Plan, step: Step, *, plan_ref: str | Path | None = None, override: bool = False) -> StepOutcome:
        """Execute ``step`` of ``plan``.

        Ordinary failures end with the step ``FAILED`` and the outcome
        carrying an :class:`UnresolvedDiagnostic`. Environment failures and
        cancellation are committed and then re-raised.
        """
        ref = plan_ref if plan_ref is not None else plan.module
        outcome = StepOutcome(ordinal=step.ordinal, name=step.name, status=step.status)
        previous_status = step.status

        self._enter(StepPhase.NOT_STARTED, step)
        validate_transition(plan, step, StepStatus.IN_PROGRESS, override=override)
        step.status = StepStatus.IN_PROGRESS
        step.attempts += 1
        self.store.save(plan, ref)
        LOGGER.info("Step %s (%s) of %s started", step.ordinal, step.name, plan.module)

        try:
            self._drive(plan, step, outcome)
        except OperationCancelled as error:
            LOGGER.warning("Step %s cancelled; reverting to %s", step.ordinal, previous_status.value)
            step.status = previous_status
            outcome.status = previous_status
            outcome.error = error
            self.store.save(plan, ref)
            self._write_artifact(plan, step, outcome)
            raise
        except EnvironmentFailure as error:
            LOGGER.warning("Step %s hit an environment failure: %s", step.ordinal, error)
            step.status = StepStatus.FAILED
            step.last_failure = StepFailureRecord(
                kind="environment",
                stage=error.stage,
                signature=f"environment: {error}",
                excerpt=" ".join(error.command),
            )
            outcome.status = StepStatus.FAILED
            outcome.error = error
            self.store.save(plan, ref)
            self._write_artifact(plan, step, outcome)
            raise

        self.store.save(plan, ref)
        self._write_artifact(plan, step, outcome)
        return outcome

    # ----------------------------------------------------------- state machine
    def _drive(self, plan: Plan, step: Step, outcome: StepOutcome) -> None:
        phase = StepPhase.FIXTURE_CHECK
        hints: List[str] = []
        fixtures: List[Fixture] = []
        max_attempts = self.settings.diagnose.max_attempts

        while True:
            self._enter(phase, step)
            try:
                if phase == StepPhase.FIXTURE_CHECK:
                    fixtures = assign_fixtures(step, decide_step_fixtures(step))
                    phase = StepPhase.FIXTURE_PREP if fixtures else StepPhase.CODEGEN
                elif phase == StepPhase.FIXTURE_PREP:
                    self._prepare_fixtures(plan, step, fixtures, hints)
                    phase = StepPhase.CODEGEN
                elif phase == StepPhase.CODEGEN:
                    request = CodeGenRequest.for_step(
                        plan, step, hints=hints, attempt=len(outcome.diagnose_attempts) + 1
                    )
                    response = self.code_generator.generate_tests(request)
                    for path in write_generated_files(response, self.source_root):
                        if path not in outcome.touched_files:
                            outcome.touched_files.append(path)
                    for note in response.notes:
                        LOGGER.info("Code generator: %s", note)
                    phase = StepPhase.PIPELINE
                elif phase == StepPhase.PIPELINE:
                    result = self.pipeline.run(plan, step)
                    outcome.pipeline_runs.append(result)
                    if not result.ok:
                        raise result.to_failure()
                    phase = StepPhase.FINALIZE
                elif phase == StepPhase.FINALIZE:
                    self._finalize(plan, step, outcome)
                    return
                else:
                    raise RuntimeError(f"Unexpected step phase {phase}")
            except StepFailure as failure:
                failed_phase = phase
                attempts_used = len(outcome.diagnose_attempts)
                if attempts_used >= max_attempts:
                    self._fail(step, outcome, failure, attempts_used)
                    return
                self._enter(StepPhase.DIAGNOSE, step)
                response = self.diagnoser.diagnose(DiagnoseRequest(step=step, failure=failure, attempt=attempts_used + 1))
                self._record_attempt(step, outcome, failed_phase, failure, response)
                if not response.matched:
                    outcome.unmatched_signatures.append(response.signature)
                    if not self.settings.diagnose.retry_unmatched:
                        self._fail(step, outcome, failure, len(outcome.diagnose_attempts))
                        return
                hints.extend(hint for hint in response.hints if hint not in hints)
                phase = response.reentry

    def _enter(self, phase: StepPhase, step: Step) -> None:
        LOGGER.debug("Step %s entering %s", step.ordinal, phase.value)
        self.cancel_token.raise_if_cancelled()

    def _prepare_fixtures(self, plan: Plan, step: Step, fixtures: List[Fixture], hints: List[str]) -> None:
        fixture_dir = self._fixture_dir(plan)
        for fixture in fixtures:
            source_path = fixture_dir / fixture.source
            if not source_path.is_file():
                request = FixtureSourceRequest(
                    module=plan.module,
                    step_ordinal=step.ordinal,
                    fixture=fixture_handle(fixture),
                    scenarios=[case.scenario for case in step.test_cases if case.fixture == fixture.name],
                    hints=list(hints),
                )
                text = self.code_generator.generate_fixture_source(request)
                if text is None:
                    raise FixtureCompileFailure(f"fixture source not found: {source_path}", stage="fixture")
                try:
                    atomic_write_text(source_path, text)
                except OSError as error:
                    raise EnvironmentFailure(
                        f"Failed to write fixture source {source_path}: {error}", stage="fixture"
                    ) from error
                fixture.source_digest = None
                LOGGER.info("Generated fixture source %s", source_path)
            self.fixture_compiler.compile(fixture, fixture_dir)

    def _fixture_dir(self, plan: Plan) -> Path:
        directory = Path(self.settings.fixtures.directory.format(module=plan.module))
        return directory if directory.is_absolute() else self.source_root / directory

    def _record_attempt(
        self,
        step: Step,
        outcome: StepOutcome,
        phase: StepPhase,
        failure: StepFailure,
        response: DiagnoseResponse,
    ) -> None:
        outcome.diagnose_attempts.append(
            DiagnoseAttempt(
                attempt=len(outcome.diagnose_attempts) + 1,
                phase=phase,
                kind=failure.kind,
                signature=response.signature,
                matched_entry=response.entry.id if response.entry else None,
                reentry=response.reentry,
                response=response.to_payload(),
            )
        )
        step.last_failure = StepFailureRecord(
            kind=failure.kind,
            stage=failure.stage,
            signature=response.signature,
            excerpt=_excerpt(failure.diagnostics),
            matched_entry=response.entry.id if response.entry else None,
        )

    def _fail(self, step: Step, outcome: StepOutcome, failure: StepFailure, attempts: int) -> None:
        signature = (
            outcome.diagnose_attempts[-1].signature
            if outcome.diagnose_attempts
            else build_signature(failure.kind, failure.diagnostics)
        )
        if step.last_failure is None or step.last_failure.signature != signature:
            step.last_failure = StepFailureRecord(
                kind=failure.kind,
                stage=failure.stage,
                signature=signature,
                excerpt=_excerpt(failure.diagnostics),
            )
        step.status = StepStatus.FAILED
        outcome.status = StepStatus.FAILED
        outcome.error = UnresolvedDiagnostic(
            signature, ordinal=step.ordinal, attempts=attempts, diagnostics=failure.diagnostics
        )
        LOGGER.warning("Step %s FAILED: %s", step.ordinal, outcome.error)

    def _finalize(self, plan: Plan, step: Step, outcome: StepOutcome) -> None:
        result = outcome.last_pipeline
        if outcome.touched_files:
            self.formatter.format(outcome.touched_files, cwd=self.source_root)

        validate_transition(plan, step, StepStatus.COMPLETED, result_ok=bool(result and result.ok))
        step.status = StepStatus.COMPLETED
        step.last_failure = None
        for case in step.test_cases:
            case.done = True
        outcome.status = StepStatus.COMPLETED

        counters = result.coverage if result else None
        current = plan.coverage.current
        if counters is not None and counters.dominates(current):
            plan.coverage.current = counters
            outcome.coverage_updated = True
        elif counters is not None:
            LOGGER.warning(
                "Step %s coverage (%s/%s lines) is below the recorded aggregate; keeping the stored value",
                step.ordinal,
                counters.lines_covered,
                counters.lines_total,
            )
        LOGGER.info("Step %s (%s) COMPLETED", step.ordinal, step.name)

    def _write_artifact(self, plan: Plan, step: Step, outcome: StepOutcome) -> None:
        payload = {
            "name": step.name,
            "status": outcome.status.value,
            "pipeline_runs": [result.to_payload() for result in outcome.pipeline_runs],
            "attempts": [attempt.to_payload() for attempt in outcome.diagnose_attempts],
            "unmatched_signatures": list(outcome.unmatched_signatures),
            "touched_files": [path.as_posix() for path in outcome.touched_files],
            "coverage_updated": outcome.coverage_updated,
            "error": str(outcome.error) if outcome.error else None,
        }
        outcome.artifact_path = write_run_log(self.settings.data_root, plan.module, step.ordinal, payload)


__all__ = ["CancellationToken", "DiagnoseAttempt", "StepExecutor", "StepOutcome"]
