from __future__ import annotations

from pathlib import Path

from conftest import coverage, make_plan_payload, passing_result
from covplan.cli import _render_plan_execution
from covplan.errors import UnresolvedDiagnostic
from covplan.memory.schema import Plan, StepStatus
from covplan.phases import StepPhase
from covplan.planning.executor import PlanExecutionSummary
from covplan.planning.step_executor import DiagnoseAttempt, StepOutcome


def test_render_plan_execution_lists_steps_attempts_and_unresolved(capsys) -> None:
    plan = Plan.model_validate(make_plan_payload(3))
    plan.steps[0].status = StepStatus.COMPLETED
    plan.steps[1].status = StepStatus.FAILED
    plan.coverage.current = coverage(200, functions=20, branches=80)

    done = StepOutcome(ordinal=1, name="step 1", status=StepStatus.COMPLETED, coverage_updated=True)
    done.pipeline_runs.append(passing_result(plan.steps[0]))
    signature = "compile: step2.cc: error: use of undeclared identifier 'x'"
    failed = StepOutcome(
        ordinal=2,
        name="step 2",
        status=StepStatus.FAILED,
        error=UnresolvedDiagnostic(signature, ordinal=2, attempts=3),
        artifact_path=Path("data/covplan/runs/interpreter/step-2-20240101T000000000000Z.json"),
    )
    failed.diagnose_attempts.append(
        DiagnoseAttempt(
            attempt=1,
            phase=StepPhase.PIPELINE,
            kind="compile",
            signature=signature,
            matched_entry=None,
            reentry=StepPhase.PIPELINE,
        )
    )
    summary = PlanExecutionSummary(
        plan=plan,
        plan_path=Path("plans/interpreter.yaml"),
        outcomes=[done, failed],
        baseline=plan.coverage.baseline,
        current=plan.coverage.current,
        stopped_early=True,
    )

    _render_plan_execution(summary)

    output = capsys.readouterr().out
    assert "Plan interpreter (plans/interpreter.yaml)" in output
    assert "- Step 1: step 1 -> COMPLETED" in output
    assert "coverage: lines 20.00%, functions 20.00%, branches 16.00%" in output
    assert f"diagnose #1: {signature} [no match]" in output
    assert "artifact: data/covplan/runs/interpreter/step-2-20240101T000000000000Z.json" in output
    assert "Steps: 1 completed, 1 failed, 1 pending" in output
    assert "(+10.00 pts vs baseline)" in output
    assert f"step 2: {signature}" in output


def test_render_plan_execution_reports_complete_plan(capsys) -> None:
    plan = Plan.model_validate(make_plan_payload(1))
    plan.steps[0].status = StepStatus.COMPLETED

    _render_plan_execution(PlanExecutionSummary(plan=plan, plan_path=Path("plans/interpreter.yaml")))

    assert "No steps executed; plan already complete." in capsys.readouterr().out
