"""Typed records persisted in plan documents and the knowledge base."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_TARGET_FUNCTIONS = 10


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class DocumentModel(BaseModel):
    """Base model for plan document sections.

    Unknown keys are retained so that a load/save cycle does not drop fields
    written by other tools or by hand.
    """

    model_config = ConfigDict(extra="allow", frozen=False, use_enum_values=False)


class StepStatus(str, Enum):
    """Lifecycle states for a plan step."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FeatureFlag(str, Enum):
    """WebAssembly proposals a fixture module may need enabled."""

    LARGE_ADDRESS = "memory64"
    ATOMICS = "threads"
    SIMD = "simd"
    BULK_MEMORY = "bulk-memory"
    REFERENCE_TYPES = "reference-types"


class CoverageCounters(DocumentModel):
    """Raw line/function/branch counters reported by the coverage tool."""

    lines_covered: int = Field(default=0, ge=0)
    lines_total: int = Field(default=0, ge=0)
    functions_covered: int = Field(default=0, ge=0)
    functions_total: int = Field(default=0, ge=0)
    branches_covered: int = Field(default=0, ge=0)
    branches_total: int = Field(default=0, ge=0)

    @staticmethod
    def _percent(covered: int, total: int) -> float:
        if total <= 0:
            return 0.0
        return round(100.0 * covered / total, 2)

    @property
    def line_percent(self) -> float:
        return self._percent(self.lines_covered, self.lines_total)

    @property
    def function_percent(self) -> float:
        return self._percent(self.functions_covered, self.functions_total)

    @property
    def branch_percent(self) -> float:
        return self._percent(self.branches_covered, self.branches_total)

    def dominates(self, other: Optional["CoverageCounters"]) -> bool:
        """Return ``True`` when every covered counter is at least ``other``'s."""
        if other is None:
            return True
        return (
            self.lines_covered >= other.lines_covered
            and self.functions_covered >= other.functions_covered
            and self.branches_covered >= other.branches_covered
        )

    def delta(self, other: Optional["CoverageCounters"]) -> Dict[str, float]:
        """Percentage-point change relative to ``other``."""
        base = other or CoverageCounters()
        return {
            "lines": round(self.line_percent - base.line_percent, 2),
            "functions": round(self.function_percent - base.function_percent, 2),
            "branches": round(self.branch_percent - base.branch_percent, 2),
        }


class PlanCoverage(DocumentModel):
    """Coverage snapshot before the plan started and the latest committed aggregate."""

    baseline: Optional[CoverageCounters] = None
    current: Optional[CoverageCounters] = None


class TestCase(DocumentModel):
    """Single test to be written for a step's target function."""

    __test__ = False

    name: str
    function: str
    scenario: str = "basic"
    description: str = ""
    requires_fixture: Optional[bool] = None
    fixture: Optional[str] = None
    done: bool = False


class Fixture(DocumentModel):
    """Binary module fixture compiled from WebAssembly text."""

    name: str
    source: str
    binary: str
    flags: List[FeatureFlag] = Field(default_factory=list)
    source_digest: Optional[str] = None

    @field_validator("flags")
    @classmethod
    def _sort_flags(cls, value: List[FeatureFlag]) -> List[FeatureFlag]:
        return sorted(set(value), key=lambda flag: flag.value)


class StepFailureRecord(DocumentModel):
    """Last failure observed for a step, kept for manual triage."""

    kind: str
    stage: Optional[str] = None
    signature: str
    excerpt: str = ""
    matched_entry: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utc_now)


class Step(DocumentModel):
    """Bounded unit of work targeting a handful of functions."""

    ordinal: int = Field(ge=1)
    name: str
    target_functions: List[str] = Field(default_factory=list)
    test_cases: List[TestCase] = Field(default_factory=list)
    fixtures: List[Fixture] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    coverage_estimate: float = 0.0
    test_pattern: Optional[str] = None
    attempts: int = 0
    last_failure: Optional[StepFailureRecord] = None

    @field_validator("target_functions")
    @classmethod
    def _limit_targets(cls, value: List[str]) -> List[str]:
        if len(value) > MAX_TARGET_FUNCTIONS:
            raise ValueError(
                f"a step may target at most {MAX_TARGET_FUNCTIONS} functions (got {len(value)})"
            )
        return value

    def get_fixture(self, name: str) -> Optional[Fixture]:
        for fixture in self.fixtures:
            if fixture.name == name:
                return fixture
        return None


class PlanProgress(DocumentModel):
    """Overall progress summary regenerated on every save."""

    total_steps: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0
    pending: int = 0
    line_percent: Optional[float] = None
    function_percent: Optional[float] = None
    branch_percent: Optional[float] = None
    updated_at: Optional[datetime] = None


class Plan(DocumentModel):
    """Ordered coverage-improvement steps for one runtime module."""

    module: str
    target_coverage: float = 0.0
    test_dir: str = ""
    coverage: PlanCoverage = Field(default_factory=PlanCoverage)
    steps: List[Step] = Field(default_factory=list)
    progress: PlanProgress = Field(default_factory=PlanProgress)

    @model_validator(mode="after")
    def _check_ordinals(self) -> "Plan":
        previous = 0
        for step in self.steps:
            if step.ordinal <= previous:
                raise ValueError(
                    f"step ordinals must be strictly increasing and unique "
                    f"(step '{step.name}' has ordinal {step.ordinal} after {previous})"
                )
            previous = step.ordinal
        return self

    def get_step(self, selector: int | str) -> Optional[Step]:
        """Look a step up by ordinal or by name."""
        if isinstance(selector, int):
            for step in self.steps:
                if step.ordinal == selector:
                    return step
            return None
        text = str(selector).strip()
        if text.isdigit():
            return self.get_step(int(text))
        lowered = text.lower()
        for step in self.steps:
            if step.name.lower() == lowered:
                return step
        return None

    def predecessors(self, step: Step) -> List[Step]:
        return [item for item in self.steps if item.ordinal < step.ordinal]

    def predecessors_completed(self, step: Step) -> bool:
        return all(item.status == StepStatus.COMPLETED for item in self.predecessors(step))

    def count(self, status: StepStatus) -> int:
        return sum(1 for step in self.steps if step.status == status)

    def refresh_progress(self) -> PlanProgress:
        current = self.coverage.current
        self.progress = self.progress.model_copy(
            update={
                "total_steps": len(self.steps),
                "completed": self.count(StepStatus.COMPLETED),
                "failed": self.count(StepStatus.FAILED),
                "in_progress": self.count(StepStatus.IN_PROGRESS),
                "pending": self.count(StepStatus.PENDING),
                "line_percent": current.line_percent if current else None,
                "function_percent": current.function_percent if current else None,
                "branch_percent": current.branch_percent if current else None,
                "updated_at": utc_now(),
            }
        )
        return self.progress


RemediationKind = Literal["regenerate", "add_fixture_flag", "command", "note"]


class RemediationAction(RecordModel):
    """One documented step of a verified fix."""

    kind: RemediationKind
    value: str = ""

    def render(self) -> str:
        return f"{self.kind}: {self.value}" if self.value else self.kind


class KnowledgeEntry(RecordModel):
    """Known failure signature paired with its verified remediation."""

    id: str
    signature: str
    match: Literal["substring", "regex"] = "substring"
    root_cause: str = ""
    remediation: List[RemediationAction] = Field(default_factory=list)
    source: str = "operator"
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("signature")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("signature must not be empty")
        return value


def dump_document(model: BaseModel) -> Dict[str, Any]:
    """Serialise a model into plain YAML/JSON friendly data.

    Declared fields are dumped in JSON mode. Unknown fields keep the values
    they were loaded with, so dates and other YAML scalars survive a save.
    """
    payload = model.model_dump(mode="json")
    _restore_extras(model, payload)
    return payload


def _restore_extras(value: Any, dumped: Any) -> None:
    if isinstance(value, BaseModel):
        if not isinstance(dumped, dict):
            return
        for key, raw in (value.model_extra or {}).items():
            dumped[key] = raw
        for name in type(value).model_fields:
            if name in dumped:
                _restore_extras(getattr(value, name), dumped[name])
    elif isinstance(value, (list, tuple)) and isinstance(dumped, list):
        for item, item_dumped in zip(value, dumped):
            _restore_extras(item, item_dumped)
    elif isinstance(value, dict) and isinstance(dumped, dict):
        for key, item in value.items():
            if key in dumped:
                _restore_extras(item, dumped[key])
