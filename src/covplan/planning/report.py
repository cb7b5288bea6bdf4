"""Markdown rendering of plan progress for humans."""

from __future__ import annotations

from typing import List, Optional

from ..memory.schema import CoverageCounters, Plan, Step, StepStatus

_STATUS_MARKERS = {
    StepStatus.PENDING: "⏳",
    StepStatus.IN_PROGRESS: "🔄",
    StepStatus.COMPLETED: "✅",
    StepStatus.FAILED: "❌",
}


def _coverage_row(label: str, counters: Optional[CoverageCounters]) -> str:
    if counters is None:
        return f"| {label} | n/a | n/a | n/a |"
    return (
        f"| {label} "
        f"| {counters.line_percent:.2f}% ({counters.lines_covered}/{counters.lines_total}) "
        f"| {counters.function_percent:.2f}% ({counters.functions_covered}/{counters.functions_total}) "
        f"| {counters.branch_percent:.2f}% ({counters.branches_covered}/{counters.branches_total}) |"
    )


def _render_step(step: Step) -> List[str]:
    marker = _STATUS_MARKERS.get(step.status, "")
    lines = [f"### Step {step.ordinal}: {step.name} {marker} {step.status.value}", ""]
    if step.target_functions:
        lines.append("Target functions: " + ", ".join(f"`{name}`" for name in step.target_functions))
    if step.coverage_estimate:
        lines.append(f"Expected gain: +{step.coverage_estimate:.1f}%")
    if step.test_pattern:
        lines.append(f"Test filter: `{step.test_pattern}`")
    lines.append("")
    for case in step.test_cases:
        box = "x" if case.done else " "
        suffix = f" (fixture: `{case.fixture}`)" if case.requires_fixture and case.fixture else ""
        lines.append(f"- [{box}] `{case.name}` → `{case.function}`: {case.scenario}{suffix}")
    if step.fixtures:
        lines.append("")
        lines.append("Fixtures:")
        for fixture in step.fixtures:
            flags = ", ".join(flag.value for flag in fixture.flags) or "none"
            lines.append(f"- `{fixture.source}` → `{fixture.binary}` (features: {flags})")
    if step.status == StepStatus.FAILED and step.last_failure is not None:
        failure = step.last_failure
        lines.extend(["", f"Last failure ({failure.kind}): `{failure.signature}`"])
        if failure.matched_entry:
            lines.append(f"Matched knowledge entry: `{failure.matched_entry}`")
    lines.append("")
    return lines


def render_plan_markdown(plan: Plan) -> str:
    """Render ``plan`` as the human-readable coverage plan document."""
    progress = plan.refresh_progress()
    lines: List[str] = [f"# {plan.module} coverage improvement plan", ""]
    if plan.test_dir:
        lines.append(f"Test directory: `{plan.test_dir}`")
    if plan.target_coverage:
        lines.append(f"Target line coverage: {plan.target_coverage:.1f}%")
    lines.extend(
        [
            "",
            "## Coverage",
            "",
            "| Snapshot | Lines | Functions | Branches |",
            "|---|---|---|---|",
            _coverage_row("Baseline", plan.coverage.baseline),
            _coverage_row("Current", plan.coverage.current),
            "",
            "## Steps",
            "",
        ]
    )
    for step in plan.steps:
        lines.extend(_render_step(step))

    lines.extend(
        [
            "## Progress",
            "",
            f"- Steps completed: {progress.completed}/{progress.total_steps}",
            f"- Failed: {progress.failed}",
            f"- In progress: {progress.in_progress}",
            f"- Pending: {progress.pending}",
        ]
    )
    current = plan.coverage.current
    if current is not None:
        delta = current.delta(plan.coverage.baseline)
        lines.append(
            f"- Line coverage change: {delta['lines']:+.2f} pts "
            f"(functions {delta['functions']:+.2f}, branches {delta['branches']:+.2f})"
        )
        if plan.target_coverage:
            remaining = max(plan.target_coverage - current.line_percent, 0.0)
            lines.append(f"- Remaining to target: {remaining:.2f} pts")
    return "\n".join(lines) + "\n"


__all__ = ["render_plan_markdown"]
