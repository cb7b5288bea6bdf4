"""Durable storage for plan documents with whole-document atomic commits."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError

from ..errors import EnvironmentFailure, InvalidTransition, PlanFormatError, PlanNotFound
from ..utils.fs import atomic_write_yaml
from .schema import Plan, Step, StepStatus, dump_document

LOGGER = logging.getLogger(__name__)

DEFAULT_PLANS_DIR = Path("plans")
PLAN_SUFFIXES = (".yaml", ".yml")

_ALLOWED_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.IN_PROGRESS}),
    StepStatus.IN_PROGRESS: frozenset(
        {StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.PENDING}
    ),
    StepStatus.FAILED: frozenset({StepStatus.IN_PROGRESS}),
    StepStatus.COMPLETED: frozenset(),
}


def validate_transition(
    plan: Plan,
    step: Step,
    status: StepStatus,
    *,
    result_ok: Optional[bool] = None,
    override: bool = False,
    log_override: bool = True,
) -> None:
    """Raise :class:`InvalidTransition` when ``step`` may not move to ``status``.

    ``log_override=False`` checks without the ordering override warning, for
    callers that validate ahead of the run that will log it.
    """
    current = step.status
    if status == StepStatus.COMPLETED and not result_ok:
        raise InvalidTransition(
            f"Step {step.ordinal} ('{step.name}') cannot be marked COMPLETED without a successful pipeline run",
            ordinal=step.ordinal,
        )

    if status == StepStatus.IN_PROGRESS:
        blocking = [item for item in plan.predecessors(step) if item.status != StepStatus.COMPLETED]
        if blocking and not override:
            labels = ", ".join(f"{item.ordinal} [{item.status.value}]" for item in blocking)
            raise InvalidTransition(
                f"Step {step.ordinal} ('{step.name}') cannot start before prior step(s) complete: {labels}",
                ordinal=step.ordinal,
            )
        if blocking and log_override:
            LOGGER.warning(
                "Ordering override: starting step %s of plan %s with incomplete predecessors",
                step.ordinal,
                plan.module,
            )
        if current == StepStatus.COMPLETED:
            if not override:
                raise InvalidTransition(
                    f"Step {step.ordinal} ('{step.name}') is already COMPLETED; re-running requires an override",
                    ordinal=step.ordinal,
                )
            return

    if status not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Step {step.ordinal} ('{step.name}') cannot move from {current.value} to {status.value}",
            ordinal=step.ordinal,
        )


class PlanStore:
    """YAML-backed plan documents, one file per runtime module."""

    def __init__(self, plans_dir: Path | str = DEFAULT_PLANS_DIR) -> None:
        self.plans_dir = Path(plans_dir)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PlanStore":
        paths = config.get("paths") or {}
        plans_dir = paths.get("plans")
        if isinstance(plans_dir, str) and plans_dir.strip():
            return cls(Path(plans_dir.strip()))
        return cls()

    # ----------------------------------------------------------------- lookup
    def resolve(self, plan_ref: str | Path) -> Path:
        """Map a path or module name onto the plan document location."""
        candidate = Path(plan_ref)
        if candidate.suffix in PLAN_SUFFIXES or len(candidate.parts) > 1:
            return candidate
        for suffix in PLAN_SUFFIXES:
            probe = self.plans_dir / f"{candidate.name}{suffix}"
            if probe.exists():
                return probe
        return self.plans_dir / f"{candidate.name}{PLAN_SUFFIXES[0]}"

    def exists(self, plan_ref: str | Path) -> bool:
        return self.resolve(plan_ref).is_file()

    # ------------------------------------------------------------- load/save
    def load(self, plan_ref: str | Path) -> Plan:
        path = self.resolve(plan_ref)
        if not path.is_file():
            raise PlanNotFound(str(plan_ref))
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except yaml.YAMLError as error:
            raise PlanFormatError(f"Failed to parse plan {path}: {error}") from error
        if not isinstance(data, dict):
            raise PlanFormatError(f"Plan {path} must be a mapping at the top level")
        try:
            return Plan.model_validate(data)
        except ValidationError as error:
            raise PlanFormatError(f"Plan {path} is invalid: {error}") from error

    def save(self, plan: Plan, plan_ref: str | Path | None = None) -> Path:
        """Commit ``plan`` atomically and return the document path."""
        path = self.resolve(plan_ref if plan_ref is not None else plan.module)
        plan.refresh_progress()
        payload = dump_document(plan)
        try:
            with self._lock:
                atomic_write_yaml(path, payload)
        except OSError as error:
            raise EnvironmentFailure(f"Failed to commit plan {path}: {error}", stage="commit") from error
        LOGGER.debug("Committed plan %s to %s", plan.module, path)
        return path

    def update_step_status(
        self,
        plan_ref: str | Path,
        step_ordinal: int,
        status: StepStatus,
        *,
        result_ok: Optional[bool] = None,
        override: bool = False,
    ) -> Plan:
        """Validate and commit a single step status change."""
        plan = self.load(plan_ref)
        step = plan.get_step(step_ordinal)
        if step is None:
            raise InvalidTransition(f"Plan {plan.module} has no step {step_ordinal}", ordinal=step_ordinal)
        validate_transition(plan, step, status, result_ok=result_ok, override=override)
        step.status = status
        self.save(plan, plan_ref)
        return plan


__all__ = ["PlanStore", "validate_transition"]
