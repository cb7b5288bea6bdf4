"""Decide which test cases need a compiled module fixture and with which features."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Pattern, Tuple

from ..memory.schema import FeatureFlag, Fixture, Step, TestCase
from ..utils.slug import fixture_basename

FunctionMetadata = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class _Rule:
    name: str
    pattern: Pattern[str]
    flag: Optional[FeatureFlag] = None


def _rule(name: str, pattern: str, flag: Optional[FeatureFlag] = None) -> _Rule:
    return _Rule(name=name, pattern=re.compile(pattern, re.IGNORECASE), flag=flag)


# Evaluated in order; the first matching rule decides, later matches add flags.
_RULES: Tuple[_Rule, ...] = (
    _rule(
        "large-address",
        r"\b(memory64|mem64|large[- ]address(es|ing)?|64[- ]bit (address|addressing|memory|index|offset)s?|"
        r"i64 (address|index)|(beyond|above|over|past) (the )?(standard )?(4 ?gi?b|32[- ]bit)|"
        r"exceed(s|ed|ing)? (the )?(standard )?(4 ?gi?b|32[- ]bit))\b",
        FeatureFlag.LARGE_ADDRESS,
    ),
    _rule(
        "shared-memory-atomics",
        r"\b(atomics?|shared[- ]memor(y|ies)|compare[- ]and[- ]swap|cas|cmpxchg|rmw|"
        r"wait ?/ ?notify|memory\.atomic\.\w+)\b",
        FeatureFlag.ATOMICS,
    ),
    _rule(
        "precise-module-structure",
        r"\b(out[- ]of[- ]bounds?|oob|stack (overflow|exhaustion)|exhaust(s|ed|ion)? (the )?(stack|memory)|"
        r"malformed|invalid (module|section|binary|magic)|corrupt(ed)? (module|section|binary)|truncated (module|binary)|"
        r"unreachable (instruction|code|trap)s?|trap(s|ping)? (on|when|at|during|inside)|"
        r"(raises?|triggers?|injects?|forces?|expects?) (an? |the )?trap|trap injection)\b",
    ),
    _rule(
        "vector-instructions",
        r"\b(simd|v128|i8x16|i16x8|i32x4|i64x2|f32x4|f64x2|vector (instruction|op|operation)s?)\b",
        FeatureFlag.SIMD,
    ),
    _rule(
        "bulk-memory-instructions",
        r"\b(bulk[- ]memory|memory\.(copy|fill|init)|data\.drop|elem\.drop|table\.(copy|init))\b",
        FeatureFlag.BULK_MEMORY,
    ),
    _rule(
        "reference-type-instructions",
        r"\b(reference[- ]types?|externref|funcref|ref\.(null|func|is_null)|table\.(get|set|grow|size|fill))\b",
        FeatureFlag.REFERENCE_TYPES,
    ),
)


@dataclass(frozen=True, slots=True)
class FixtureDecision:
    """Whether a test case needs a binary fixture and which features it must enable."""

    required: bool
    flags: FrozenSet[FeatureFlag] = frozenset()
    reasons: Tuple[str, ...] = ()

    @property
    def rule(self) -> Optional[str]:
        """Deciding rule, i.e. the first one that matched."""
        return self.reasons[0] if self.reasons else None


NOT_REQUIRED = FixtureDecision(required=False)


def _corpus(test_case: TestCase, function_metadata: Optional[FunctionMetadata]) -> str:
    parts: List[str] = [test_case.scenario, test_case.description, test_case.name, test_case.function]
    if function_metadata:
        tags = function_metadata.get("tags")
        if isinstance(tags, Iterable) and not isinstance(tags, str):
            parts.extend(str(tag) for tag in tags)
        for key in ("signature", "summary"):
            value = function_metadata.get(key)
            if isinstance(value, str):
                parts.append(value)
    # Identifiers are scanned word by word so ``wasm_runtime_atomic_wait`` matches ``atomic``.
    return "\n".join(part.replace("_", " ") for part in parts if part)


def needs_fixture(test_case: TestCase, function_metadata: Optional[FunctionMetadata] = None) -> FixtureDecision:
    """Classify ``test_case``; pure and deterministic in its inputs."""
    text = _corpus(test_case, function_metadata)
    reasons: List[str] = []
    flags: set[FeatureFlag] = set()
    for rule in _RULES:
        if rule.pattern.search(text):
            reasons.append(rule.name)
            if rule.flag is not None:
                flags.add(rule.flag)
    if not reasons:
        if test_case.requires_fixture or test_case.fixture:
            return FixtureDecision(required=True, reasons=("declared",))
        return NOT_REQUIRED
    return FixtureDecision(required=True, flags=frozenset(flags), reasons=tuple(reasons))


@dataclass(slots=True)
class StepFixturePlan:
    """Per-test decisions for a step together with the union of their flags."""

    decisions: Dict[str, FixtureDecision] = field(default_factory=dict)
    flags: FrozenSet[FeatureFlag] = frozenset()

    @property
    def required(self) -> bool:
        return any(decision.required for decision in self.decisions.values())


def decide_step_fixtures(
    step: Step,
    function_metadata: Optional[Mapping[str, FunctionMetadata]] = None,
) -> StepFixturePlan:
    metadata = function_metadata or {}
    decisions: Dict[str, FixtureDecision] = {}
    flags: set[FeatureFlag] = set()
    for case in step.test_cases:
        decision = needs_fixture(case, metadata.get(case.function))
        decisions[case.name] = decision
        flags.update(decision.flags)
    return StepFixturePlan(decisions=decisions, flags=frozenset(flags))


def default_fixture(step: Step) -> Fixture:
    base = fixture_basename(step.ordinal, step.name)
    return Fixture(name=base, source=f"{base}.wat", binary=f"{base}.wasm")


def assign_fixtures(step: Step, fixture_plan: StepFixturePlan) -> List[Fixture]:
    """Record decisions on the step's test cases and attach fixtures to them.

    Test cases that need a fixture but name none share the step's default
    fixture. Flags are only ever added to a fixture, never removed. Returns
    the fixtures the step uses, in declaration order.
    """
    used: List[Fixture] = []
    for case in step.test_cases:
        decision = fixture_plan.decisions.get(case.name, NOT_REQUIRED)
        case.requires_fixture = decision.required
        if not decision.required:
            continue
        fixture = step.get_fixture(case.fixture) if case.fixture else None
        if fixture is None:
            if case.fixture:
                base = case.fixture
                fixture = Fixture(name=base, source=f"{base}.wat", binary=f"{base}.wasm")
            else:
                fixture = step.get_fixture(default_fixture(step).name) or default_fixture(step)
            if step.get_fixture(fixture.name) is None:
                step.fixtures.append(fixture)
            case.fixture = fixture.name
        merged = set(fixture.flags) | set(decision.flags)
        if merged != set(fixture.flags):
            fixture.flags = sorted(merged, key=lambda item: item.value)
        if all(item is not fixture for item in used):
            used.append(fixture)
    return used


__all__ = [
    "FixtureDecision",
    "StepFixturePlan",
    "assign_fixtures",
    "decide_step_fixtures",
    "default_fixture",
    "needs_fixture",
]
