"""Step state-machine phases."""

from __future__ import annotations

from enum import Enum


class StepPhase(str, Enum):
    """States a step passes through while it is being executed."""

    NOT_STARTED = "not_started"
    FIXTURE_CHECK = "fixture_check"
    FIXTURE_PREP = "fixture_prep"
    CODEGEN = "codegen"
    PIPELINE = "pipeline"
    DIAGNOSE = "diagnose"
    FINALIZE = "finalize"


__all__ = ["StepPhase"]
