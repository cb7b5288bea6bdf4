"""Plan orchestration: pick eligible steps and run them in ordinal order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ..errors import InvalidTransition, UnresolvedDiagnostic
from ..memory.knowledge import KnowledgeBase
from ..memory.plan_store import PlanStore, validate_transition
from ..memory.schema import CoverageCounters, Plan, Step, StepStatus
from .step_executor import CancellationToken, StepExecutor, StepOutcome

LOGGER = logging.getLogger(__name__)

ALL_STEPS = "all"


@dataclass(slots=True)
class PlanExecutionSummary:
    """Aggregated result of one ``execute`` call."""

    plan: Plan
    plan_path: Path
    requested: str = ALL_STEPS
    outcomes: List[StepOutcome] = field(default_factory=list)
    baseline: Optional[CoverageCounters] = None
    current: Optional[CoverageCounters] = None
    stopped_early: bool = False

    @property
    def completed(self) -> int:
        return self.plan.count(StepStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self.plan.count(StepStatus.FAILED)

    @property
    def pending(self) -> int:
        return self.plan.count(StepStatus.PENDING) + self.plan.count(StepStatus.IN_PROGRESS)

    @property
    def unresolved(self) -> List[UnresolvedDiagnostic]:
        return [outcome.error for outcome in self.outcomes if isinstance(outcome.error, UnresolvedDiagnostic)]

    @property
    def ok(self) -> bool:
        """``True`` when every step this call ran ended COMPLETED."""
        return all(outcome.ok for outcome in self.outcomes)

    @property
    def coverage_delta(self) -> Dict[str, float]:
        if self.current is None:
            return {}
        return self.current.delta(self.baseline)


class PlanOrchestrator:
    """Execute a plan's steps through :class:`StepExecutor` with ordering guarantees."""

    def __init__(self, store: PlanStore, step_executor: StepExecutor) -> None:
        self._store = store
        self._steps = step_executor

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
        base_dir: Path | None = None,
    ) -> "PlanOrchestrator":
        store = PlanStore.from_config(config)
        executor = StepExecutor.from_config(
            config,
            store=store,
            knowledge=KnowledgeBase.from_config(config),
            cancel_token=cancel_token,
            base_dir=base_dir,
        )
        return cls(store, executor)

    @property
    def store(self) -> PlanStore:
        return self._store

    # ------------------------------------------------------------------ public
    def execute(
        self,
        plan_ref: str | Path,
        step_selector: int | str = ALL_STEPS,
        *,
        override: bool = False,
        continue_on_failure: bool = False,
    ) -> PlanExecutionSummary:
        plan = self._store.load(plan_ref)
        summary = PlanExecutionSummary(
            plan=plan,
            plan_path=self._store.resolve(plan_ref),
            requested=str(step_selector),
            baseline=plan.coverage.baseline,
            current=plan.coverage.current,
        )

        if str(step_selector).strip().lower() == ALL_STEPS:
            self._execute_all(plan, plan_ref, summary, override=override, continue_on_failure=continue_on_failure)
        else:
            self._execute_single(plan, plan_ref, step_selector, summary, override=override)

        summary.current = plan.coverage.current
        return summary

    # ----------------------------------------------------------------- helpers
    def _execute_all(
        self,
        plan: Plan,
        plan_ref: str | Path,
        summary: PlanExecutionSummary,
        *,
        override: bool,
        continue_on_failure: bool,
    ) -> None:
        if all(step.status == StepStatus.COMPLETED for step in plan.steps):
            LOGGER.info("Plan %s is already complete; nothing to execute", plan.module)
            return

        failure_seen = False
        for step in plan.steps:
            if step.status == StepStatus.COMPLETED:
                continue
            step_override = override
            if not plan.predecessors_completed(step):
                if not (override or (continue_on_failure and failure_seen)):
                    LOGGER.info("Stopping before step %s: earlier steps are not COMPLETED", step.ordinal)
                    summary.stopped_early = True
                    break
                if not override:
                    LOGGER.warning(
                        "continue-on-failure: running step %s despite incomplete predecessors", step.ordinal
                    )
                step_override = True

            outcome = self._steps.run(plan, step, plan_ref=plan_ref, override=step_override)
            summary.outcomes.append(outcome)
            if not outcome.ok:
                failure_seen = True
                if not continue_on_failure:
                    summary.stopped_early = True
                    break

    def _execute_single(
        self,
        plan: Plan,
        plan_ref: str | Path,
        selector: int | str,
        summary: PlanExecutionSummary,
        *,
        override: bool,
    ) -> None:
        step = self._select_step(plan, selector)
        # Validated before anything is written so a refused request leaves the plan untouched.
        validate_transition(plan, step, StepStatus.IN_PROGRESS, override=override, log_override=False)
        summary.outcomes.append(self._steps.run(plan, step, plan_ref=plan_ref, override=override))

    @staticmethod
    def _select_step(plan: Plan, selector: int | str) -> Step:
        step = plan.get_step(selector)
        if step is None:
            raise InvalidTransition(f"Plan {plan.module} has no step matching {selector!r}")
        return step


__all__ = ["ALL_STEPS", "PlanExecutionSummary", "PlanOrchestrator"]
