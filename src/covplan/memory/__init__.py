"""Persistent state: plan documents and the failure knowledge base."""

from .knowledge import KnowledgeBase, KnowledgeBaseError, get_seed_entries
from .plan_store import PlanStore, validate_transition
from .schema import (
    CoverageCounters,
    FeatureFlag,
    Fixture,
    KnowledgeEntry,
    Plan,
    PlanCoverage,
    RemediationAction,
    Step,
    StepFailureRecord,
    StepStatus,
    TestCase,
)

__all__ = [
    "CoverageCounters",
    "FeatureFlag",
    "Fixture",
    "KnowledgeBase",
    "KnowledgeBaseError",
    "KnowledgeEntry",
    "Plan",
    "PlanCoverage",
    "PlanStore",
    "RemediationAction",
    "Step",
    "StepFailureRecord",
    "StepStatus",
    "TestCase",
    "get_seed_entries",
    "validate_transition",
]
