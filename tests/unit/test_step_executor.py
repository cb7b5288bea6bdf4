from __future__ import annotations

import json

import pytest

from conftest import (
    FakeFixtureCompiler,
    FakePipeline,
    RecordingGenerator,
    build_step_executor,
    coverage,
    failing_result,
    make_plan_payload,
    passing_result,
)
from covplan.errors import EnvironmentFailure, OperationCancelled, UnresolvedDiagnostic
from covplan.memory.schema import KnowledgeEntry, Plan, RemediationAction, StepStatus
from covplan.phases import StepPhase
from covplan.planning.step_executor import CancellationToken
from covplan.tools.run_logs import load_run_log

UNDECLARED = "step1.cc:12:5: error: use of undeclared identifier 'wasm_func_1'"


def _always(result_factory):
    return lambda plan, step, attempt: result_factory(step)


def test_successful_step_is_committed(tmp_path, plan_store, saved_plan) -> None:
    pipeline = FakePipeline(_always(passing_result))
    executor = build_step_executor(tmp_path, plan_store, pipeline)
    plan = plan_store.load("interpreter")

    outcome = executor.run(plan, plan.steps[0])

    assert outcome.ok
    assert outcome.coverage_updated is True
    assert pipeline.calls == [1]
    stored = plan_store.load("interpreter")
    step = stored.get_step(1)
    assert step.status == StepStatus.COMPLETED
    assert step.attempts == 1
    assert all(case.done for case in step.test_cases)
    assert stored.coverage.current.lines_covered == 200
    assert stored.progress.completed == 1
    artifact = json.loads(outcome.artifact_path.read_text(encoding="utf-8"))
    assert artifact["status"] == "COMPLETED"
    assert artifact["module"] == "interpreter"


def test_unmatched_failures_are_retried_then_marked_failed(tmp_path, plan_store, saved_plan) -> None:
    pipeline = FakePipeline(lambda plan, step, attempt: failing_result(step, UNDECLARED))
    executor = build_step_executor(tmp_path, plan_store, pipeline, entries=[])
    plan = plan_store.load("interpreter")

    outcome = executor.run(plan, plan.steps[0])

    assert pipeline.calls == [1, 1, 1, 1]
    assert len(outcome.diagnose_attempts) == 3
    assert outcome.status == StepStatus.FAILED
    assert isinstance(outcome.error, UnresolvedDiagnostic)
    assert outcome.error.attempts == 3
    assert len(outcome.unmatched_signatures) == 3
    stored = plan_store.load("interpreter").get_step(1)
    assert stored.status == StepStatus.FAILED
    assert stored.last_failure.signature == "compile: step1.cc: error: use of undeclared identifier 'wasm_func_1'"
    assert stored.last_failure.matched_entry is None


def test_unmatched_failure_fails_immediately_without_retry(tmp_path, plan_store, saved_plan) -> None:
    pipeline = FakePipeline(lambda plan, step, attempt: failing_result(step, UNDECLARED))
    executor = build_step_executor(tmp_path, plan_store, pipeline, entries=[], retry_unmatched=False)
    plan = plan_store.load("interpreter")

    outcome = executor.run(plan, plan.steps[0])

    assert pipeline.calls == [1]
    assert len(outcome.diagnose_attempts) == 1
    assert outcome.status == StepStatus.FAILED


def test_zero_diagnose_attempts_fails_on_first_error(tmp_path, plan_store, saved_plan) -> None:
    pipeline = FakePipeline(lambda plan, step, attempt: failing_result(step, UNDECLARED))
    executor = build_step_executor(tmp_path, plan_store, pipeline, max_attempts=0)
    plan = plan_store.load("interpreter")

    outcome = executor.run(plan, plan.steps[0])

    assert pipeline.calls == [1]
    assert outcome.diagnose_attempts == []
    assert outcome.status == StepStatus.FAILED
    assert outcome.error.signature == "compile: step1.cc: error: use of undeclared identifier 'wasm_func_1'"


def test_regenerate_hint_reaches_the_next_generation(tmp_path, plan_store, saved_plan) -> None:
    entry = KnowledgeEntry(
        id="include-export-header",
        signature="undeclared identifier",
        remediation=[RemediationAction(kind="regenerate", value="Include wasm_export.h")],
    )

    def behaviour(plan, step, attempt):
        return failing_result(step, UNDECLARED) if attempt == 1 else passing_result(step)

    pipeline = FakePipeline(behaviour)
    generator = RecordingGenerator()
    executor = build_step_executor(tmp_path, plan_store, pipeline, entries=[entry], generator=generator)
    plan = plan_store.load("interpreter")

    outcome = executor.run(plan, plan.steps[0])

    assert outcome.ok
    assert [request.hints for request in generator.requests] == [[], ["Include wasm_export.h"]]
    assert generator.requests[1].attempt == 2
    attempt = outcome.diagnose_attempts[0]
    assert attempt.matched_entry == "include-export-header"
    assert attempt.reentry == StepPhase.CODEGEN
    assert plan_store.load("interpreter").get_step(1).last_failure is None


def test_fixture_flag_remediation_recompiles_fixture(tmp_path, plan_store) -> None:
    payload = make_plan_payload(1)
    payload["steps"][0]["test_cases"][0]["scenario"] = "atomic compare-and-swap on shared memory"
    plan_store.save(Plan.model_validate(payload))
    compiler = FakeFixtureCompiler(failures=["step1.wat:2:3: error: memory64 support not enabled"])
    generator = RecordingGenerator()
    pipeline = FakePipeline(_always(passing_result))
    executor = build_step_executor(
        tmp_path, plan_store, pipeline, fixture_compiler=compiler, generator=generator
    )
    plan = plan_store.load("interpreter")

    outcome = executor.run(plan, plan.steps[0])

    assert outcome.ok
    assert compiler.compiled == [
        ("step1_step_1", ("threads",)),
        ("step1_step_1", ("memory64", "threads")),
    ]
    assert len(generator.fixture_requests) == 1
    assert outcome.diagnose_attempts[0].reentry == StepPhase.FIXTURE_PREP
    assert outcome.diagnose_attempts[0].matched_entry == "seed::fixture::memory64-disabled"
    source = tmp_path / "src-root/tests/unit/interpreter/wasm-apps/step1_step_1.wat"
    assert source.read_text(encoding="utf-8") == "(module (memory 1))\n"
    stored = plan_store.load("interpreter").get_step(1)
    assert [flag.value for flag in stored.fixtures[0].flags] == ["memory64", "threads"]
    assert stored.test_cases[0].requires_fixture is True
    assert stored.test_cases[0].fixture == "step1_step_1"


def test_missing_fixture_source_without_generator_output_fails(tmp_path, plan_store) -> None:
    payload = make_plan_payload(1)
    payload["steps"][0]["test_cases"][0]["scenario"] = "out-of-bounds memory access traps"
    plan_store.save(Plan.model_validate(payload))
    generator = RecordingGenerator(fixture_text=None)
    pipeline = FakePipeline(_always(passing_result))
    executor = build_step_executor(tmp_path, plan_store, pipeline, entries=[], generator=generator, max_attempts=1)
    plan = plan_store.load("interpreter")

    outcome = executor.run(plan, plan.steps[0])

    assert outcome.status == StepStatus.FAILED
    assert pipeline.calls == []
    assert outcome.diagnose_attempts[0].kind == "fixture-compile"


def test_environment_failure_is_committed_and_raised(tmp_path, plan_store, saved_plan) -> None:
    def behaviour(plan, step, attempt):
        raise EnvironmentFailure("Executable not found: cmake", stage="configure", command=("cmake",))

    executor = build_step_executor(tmp_path, plan_store, FakePipeline(behaviour))
    plan = plan_store.load("interpreter")

    with pytest.raises(EnvironmentFailure):
        executor.run(plan, plan.steps[0])

    stored = plan_store.load("interpreter").get_step(1)
    assert stored.status == StepStatus.FAILED
    assert stored.last_failure.kind == "environment"
    assert stored.last_failure.stage == "configure"
    runs = list((tmp_path / "data/runs/interpreter").glob("step-1-*.json"))
    assert len(runs) == 1
    assert load_run_log(runs[0]).attempts == []


def test_stage_timeout_fails_step_without_consuming_diagnose_attempts(tmp_path, plan_store, saved_plan) -> None:
    def behaviour(plan, step, attempt):
        if attempt == 1:
            return failing_result(step, UNDECLARED)
        raise EnvironmentFailure("Command timed out after 0.1s: ctest", stage="test", command=("ctest",))

    pipeline = FakePipeline(behaviour)
    executor = build_step_executor(tmp_path, plan_store, pipeline)
    plan = plan_store.load("interpreter")

    with pytest.raises(EnvironmentFailure):
        executor.run(plan, plan.steps[0])

    assert pipeline.calls == [1, 1]
    stored = plan_store.load("interpreter").get_step(1)
    assert stored.status == StepStatus.FAILED
    assert stored.last_failure.kind == "environment"
    assert stored.last_failure.stage == "test"
    [artifact] = (tmp_path / "data/runs/interpreter").glob("step-1-*.json")
    assert len(load_run_log(artifact).attempts) == 1


def test_cancellation_reverts_step_status(tmp_path, plan_store, saved_plan) -> None:
    token = CancellationToken()

    def behaviour(plan, step, attempt):
        token.cancel()
        return failing_result(step, UNDECLARED)

    executor = build_step_executor(tmp_path, plan_store, FakePipeline(behaviour), cancel_token=token)
    plan = plan_store.load("interpreter")

    with pytest.raises(OperationCancelled):
        executor.run(plan, plan.steps[0])

    stored = plan_store.load("interpreter").get_step(1)
    assert stored.status == StepStatus.PENDING
    assert stored.attempts == 1


def test_cancellation_before_start_writes_nothing(tmp_path, plan_store, saved_plan) -> None:
    token = CancellationToken()
    token.cancel()
    pipeline = FakePipeline(_always(passing_result))
    executor = build_step_executor(tmp_path, plan_store, pipeline, cancel_token=token)
    path = plan_store.resolve("interpreter")
    before = path.read_bytes()
    plan = plan_store.load("interpreter")

    with pytest.raises(OperationCancelled):
        executor.run(plan, plan.steps[0])

    assert path.read_bytes() == before
    assert pipeline.calls == []


def test_lower_coverage_does_not_replace_aggregate(tmp_path, plan_store) -> None:
    plan = Plan.model_validate(make_plan_payload(1))
    plan.coverage.current = coverage(500, functions=30, branches=90)
    plan_store.save(plan)
    executor = build_step_executor(tmp_path, plan_store, FakePipeline(_always(passing_result)))
    plan = plan_store.load("interpreter")

    outcome = executor.run(plan, plan.steps[0])

    assert outcome.ok
    assert outcome.coverage_updated is False
    assert plan_store.load("interpreter").coverage.current.lines_covered == 500
