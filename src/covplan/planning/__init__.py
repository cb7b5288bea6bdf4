"""Planning helpers: fixture decisions, step execution and plan orchestration."""

from .executor import ALL_STEPS, PlanExecutionSummary, PlanOrchestrator
from .fixtures import FixtureDecision, StepFixturePlan, assign_fixtures, decide_step_fixtures, needs_fixture
from .report import render_plan_markdown
from .step_executor import CancellationToken, DiagnoseAttempt, StepExecutor, StepOutcome

__all__ = [
    "ALL_STEPS",
    "CancellationToken",
    "DiagnoseAttempt",
    "FixtureDecision",
    "PlanExecutionSummary",
    "PlanOrchestrator",
    "StepExecutor",
    "StepFixturePlan",
    "StepOutcome",
    "assign_fixtures",
    "decide_step_fixtures",
    "needs_fixture",
    "render_plan_markdown",
]
