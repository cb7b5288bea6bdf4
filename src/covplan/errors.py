"""Exception taxonomy shared by the plan store, pipeline and executors."""

from __future__ import annotations


class CovplanError(RuntimeError):
    """Base class for all errors raised by the coverage planner."""


class PlanNotFound(CovplanError):
    """Raised when a plan reference does not resolve to a plan document."""

    def __init__(self, plan_ref: str) -> None:
        super().__init__(f"Plan not found: {plan_ref}")
        self.plan_ref = plan_ref


class PlanFormatError(CovplanError):
    """Raised when a plan document exists but cannot be parsed or validated."""


class InvalidTransition(CovplanError):
    """Raised when a step status change would violate plan ordering rules."""

    def __init__(self, message: str, *, ordinal: int | None = None) -> None:
        super().__init__(message)
        self.ordinal = ordinal


class EnvironmentFailure(CovplanError):
    """Missing toolchain, stage timeout or unavailable filesystem.

    Never retried automatically; fatal to the current invocation.
    """

    def __init__(self, message: str, *, stage: str | None = None, command: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.stage = stage
        self.command = command


class OperationCancelled(CovplanError):
    """Raised when an operator abort is honoured at a state transition."""


class StepFailure(CovplanError):
    """Ordinary step failure that is routed to the Diagnose state."""

    kind = "step"

    def __init__(self, diagnostics: str, *, stage: str | None = None) -> None:
        summary = diagnostics.strip().splitlines()[0] if diagnostics.strip() else self.kind
        super().__init__(f"{self.kind} failure: {summary}")
        self.diagnostics = diagnostics
        self.stage = stage


class FixtureCompileFailure(StepFailure):
    kind = "fixture-compile"


class BuildConfigFailure(StepFailure):
    kind = "configure"


class CompileFailure(StepFailure):
    kind = "compile"


class TestFailure(StepFailure):
    __test__ = False  # keep pytest from collecting this class

    kind = "test"


class CoverageCaptureFailure(StepFailure):
    kind = "coverage"


class CodeGenerationFailure(StepFailure):
    kind = "codegen"


class UnresolvedDiagnostic(CovplanError):
    """Step failure with no knowledge base match after retries were exhausted."""

    def __init__(self, signature: str, *, ordinal: int, attempts: int, diagnostics: str = "") -> None:
        super().__init__(
            f"Step {ordinal} failed after {attempts} diagnose attempt(s); unresolved signature: {signature}"
        )
        self.signature = signature
        self.ordinal = ordinal
        self.attempts = attempts
        self.diagnostics = diagnostics


STEP_FAILURE_TYPES: dict[str, type[StepFailure]] = {
    cls.kind: cls
    for cls in (
        FixtureCompileFailure,
        BuildConfigFailure,
        CompileFailure,
        TestFailure,
        CoverageCaptureFailure,
        CodeGenerationFailure,
    )
}


__all__ = [
    "BuildConfigFailure",
    "CodeGenerationFailure",
    "CompileFailure",
    "CovplanError",
    "CoverageCaptureFailure",
    "EnvironmentFailure",
    "FixtureCompileFailure",
    "InvalidTransition",
    "OperationCancelled",
    "PlanFormatError",
    "PlanNotFound",
    "STEP_FAILURE_TYPES",
    "StepFailure",
    "TestFailure",
    "UnresolvedDiagnostic",
]
