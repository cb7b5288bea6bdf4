from __future__ import annotations

from datetime import date

import pytest
import yaml

from conftest import make_plan_payload
from covplan.errors import InvalidTransition, PlanFormatError, PlanNotFound
from covplan.memory.plan_store import PlanStore, validate_transition
from covplan.memory.schema import Plan, StepStatus


def test_round_trip_preserves_unknown_fields(plan_store: PlanStore) -> None:
    payload = make_plan_payload(2)
    payload["owner"] = "runtime-team"
    payload["steps"][0]["notes"] = {"reviewer": "alice", "links": ["a", "b"]}
    payload["steps"][1]["test_cases"][0]["priority"] = "high"
    path = plan_store.resolve("interpreter")
    path.parent.mkdir(parents=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")

    plan = plan_store.load("interpreter")
    plan_store.save(plan)

    reloaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert reloaded["owner"] == "runtime-team"
    assert reloaded["steps"][0]["notes"] == {"reviewer": "alice", "links": ["a", "b"]}
    assert reloaded["steps"][1]["test_cases"][0]["priority"] == "high"
    assert reloaded["progress"]["total_steps"] == 2


def test_round_trip_keeps_yaml_native_types_of_unknown_fields(plan_store: PlanStore) -> None:
    path = plan_store.resolve("interpreter")
    path.parent.mkdir(parents=True)
    document = yaml.safe_dump(make_plan_payload(1), sort_keys=False)
    document += "created: 2024-01-01\n"
    path.write_text(document, encoding="utf-8")
    plan = plan_store.load("interpreter")
    plan.steps[0].model_extra["reviewed"] = [date(2024, 2, 3), 7]

    plan_store.save(plan)

    reloaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert reloaded["created"] == date(2024, 1, 1)
    assert reloaded["steps"][0]["reviewed"] == [date(2024, 2, 3), 7]
    assert reloaded["steps"][0]["status"] == "PENDING"


def test_save_is_atomic_and_leaves_no_temp_files(plan_store: PlanStore, saved_plan: Plan) -> None:
    saved_plan.steps[0].status = StepStatus.IN_PROGRESS
    path = plan_store.save(saved_plan)

    leftovers = [item.name for item in path.parent.iterdir() if item.name != path.name]
    assert leftovers == []
    assert plan_store.load("interpreter").steps[0].status == StepStatus.IN_PROGRESS


def test_load_missing_plan_raises_plan_not_found(plan_store: PlanStore) -> None:
    with pytest.raises(PlanNotFound):
        plan_store.load("no-such-module")


def test_load_rejects_duplicate_ordinals(plan_store: PlanStore) -> None:
    payload = make_plan_payload(2)
    payload["steps"][1]["ordinal"] = 1
    path = plan_store.resolve("interpreter")
    path.parent.mkdir(parents=True)
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")

    with pytest.raises(PlanFormatError):
        plan_store.load("interpreter")


def test_step_rejects_more_than_ten_target_functions() -> None:
    payload = make_plan_payload(1)
    payload["steps"][0]["target_functions"] = [f"fn_{index}" for index in range(11)]

    with pytest.raises(ValueError):
        Plan.model_validate(payload)


def test_update_step_status_enforces_ordering(plan_store: PlanStore, saved_plan: Plan) -> None:
    path = plan_store.resolve("interpreter")
    before = path.read_bytes()

    with pytest.raises(InvalidTransition):
        plan_store.update_step_status("interpreter", 2, StepStatus.IN_PROGRESS)
    assert path.read_bytes() == before

    plan = plan_store.update_step_status("interpreter", 2, StepStatus.IN_PROGRESS, override=True)
    assert plan.get_step(2).status == StepStatus.IN_PROGRESS


def test_completed_requires_successful_result(plan_store: PlanStore, saved_plan: Plan) -> None:
    plan_store.update_step_status("interpreter", 1, StepStatus.IN_PROGRESS)

    with pytest.raises(InvalidTransition):
        plan_store.update_step_status("interpreter", 1, StepStatus.COMPLETED, result_ok=False)

    plan = plan_store.update_step_status("interpreter", 1, StepStatus.COMPLETED, result_ok=True)
    assert plan.get_step(1).status == StepStatus.COMPLETED
    assert plan.progress.completed == 1


def test_transition_table() -> None:
    plan = Plan.model_validate(make_plan_payload(1))
    step = plan.steps[0]

    with pytest.raises(InvalidTransition):
        validate_transition(plan, step, StepStatus.FAILED)

    step.status = StepStatus.FAILED
    validate_transition(plan, step, StepStatus.IN_PROGRESS)

    step.status = StepStatus.COMPLETED
    with pytest.raises(InvalidTransition):
        validate_transition(plan, step, StepStatus.IN_PROGRESS)
    validate_transition(plan, step, StepStatus.IN_PROGRESS, override=True)


def test_get_step_accepts_ordinal_or_name() -> None:
    plan = Plan.model_validate(make_plan_payload(3))

    assert plan.get_step(2).name == "step 2"
    assert plan.get_step("3").ordinal == 3
    assert plan.get_step("STEP 1").ordinal == 1
    assert plan.get_step(9) is None
