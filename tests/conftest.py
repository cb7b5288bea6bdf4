from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from covplan.config import FormatterSettings, Settings  # noqa: E402
from covplan.memory.knowledge import KnowledgeBase  # noqa: E402
from covplan.memory.plan_store import PlanStore  # noqa: E402
from covplan.memory.schema import CoverageCounters, Fixture, Plan, Step  # noqa: E402
from covplan.phases.codegen import CodeGenerator, CodeGenRequest, CodeGenResponse, FixtureSourceRequest  # noqa: E402
from covplan.planning.step_executor import CancellationToken, StepExecutor  # noqa: E402
from covplan.tools.formatter import SourceFormatter  # noqa: E402
from covplan.tools.pipeline import PipelineResult, PipelineStage  # noqa: E402


def make_plan_payload(step_count: int = 3, *, module: str = "interpreter") -> dict[str, Any]:
    """Plan document with ``step_count`` PENDING steps of plain source-level tests."""
    return {
        "module": module,
        "target_coverage": 80.0,
        "test_dir": f"tests/unit/{module}",
        "coverage": {
            "baseline": {
                "lines_covered": 100,
                "lines_total": 1000,
                "functions_covered": 10,
                "functions_total": 100,
                "branches_covered": 50,
                "branches_total": 500,
            }
        },
        "steps": [
            {
                "ordinal": index,
                "name": f"step {index}",
                "target_functions": [f"wasm_func_{index}"],
                "test_cases": [
                    {
                        "name": f"Step{index}_BasicCall",
                        "function": f"wasm_func_{index}",
                        "scenario": "basic arithmetic function call",
                    }
                ],
            }
            for index in range(1, step_count + 1)
        ],
    }


def coverage(lines: int, *, total: int = 1000, functions: int = 10, branches: int = 50) -> CoverageCounters:
    return CoverageCounters(
        lines_covered=lines,
        lines_total=total,
        functions_covered=functions,
        functions_total=100,
        branches_covered=branches,
        branches_total=500,
    )


def passing_result(step: Step, lines: int = 200) -> PipelineResult:
    return PipelineResult(step_ordinal=step.ordinal, ok=True, coverage=coverage(lines, functions=20, branches=80))


def failing_result(step: Step, diagnostics: str, *, stage: PipelineStage = PipelineStage.BUILD) -> PipelineResult:
    kinds = {
        PipelineStage.CONFIGURE: "configure",
        PipelineStage.BUILD: "compile",
        PipelineStage.TEST: "test",
        PipelineStage.COVERAGE: "coverage",
    }
    return PipelineResult(
        step_ordinal=step.ordinal,
        ok=False,
        failed_stage=stage,
        failure_kind=kinds[stage],
        diagnostics=diagnostics,
    )


@dataclass
class FakePipeline:
    """Pipeline double driven by a per-step behaviour callable."""

    behaviour: Callable[[Plan, Step, int], PipelineResult]
    calls: List[int] = field(default_factory=list)

    def run(self, plan: Plan, step: Step) -> PipelineResult:
        self.calls.append(step.ordinal)
        attempt = sum(1 for ordinal in self.calls if ordinal == step.ordinal)
        return self.behaviour(plan, step, attempt)


@dataclass
class FakeFixtureCompiler:
    failures: List[str] = field(default_factory=list)
    compiled: List[tuple[str, tuple[str, ...]]] = field(default_factory=list)

    def compile(self, fixture: Fixture, fixture_dir: Path, *, force: bool = False) -> None:
        from covplan.errors import FixtureCompileFailure

        self.compiled.append((fixture.name, tuple(flag.value for flag in fixture.flags)))
        if self.failures:
            raise FixtureCompileFailure(self.failures.pop(0), stage="fixture")


@dataclass
class RecordingGenerator(CodeGenerator):
    requests: List[CodeGenRequest] = field(default_factory=list)
    fixture_requests: List[FixtureSourceRequest] = field(default_factory=list)
    fixture_text: str | None = "(module (memory 1))\n"

    def generate_tests(self, request: CodeGenRequest) -> CodeGenResponse:
        self.requests.append(request)
        return CodeGenResponse()

    def generate_fixture_source(self, request: FixtureSourceRequest) -> str | None:
        self.fixture_requests.append(request)
        return self.fixture_text


@pytest.fixture()
def plan_store(tmp_path: Path) -> PlanStore:
    return PlanStore(tmp_path / "plans")


@pytest.fixture()
def saved_plan(plan_store: PlanStore) -> Plan:
    plan = Plan.model_validate(make_plan_payload())
    plan_store.save(plan)
    return plan


def build_step_executor(
    tmp_path: Path,
    store: PlanStore,
    pipeline: FakePipeline,
    *,
    knowledge: KnowledgeBase | None = None,
    entries: Iterable[Any] | None = None,
    max_attempts: int = 3,
    retry_unmatched: bool = True,
    fixture_compiler: FakeFixtureCompiler | None = None,
    generator: RecordingGenerator | None = None,
    cancel_token: CancellationToken | None = None,
) -> StepExecutor:
    settings = Settings.from_config(
        {
            "paths": {"data": str(tmp_path / "data")},
            "pipeline": {"source_root": str(tmp_path / "src-root")},
            "diagnose": {"max_attempts": max_attempts, "retry_unmatched": retry_unmatched},
        }
    )
    if knowledge is None:
        knowledge = KnowledgeBase(None, entries=list(entries) if entries is not None else None)
    return StepExecutor(
        store,
        settings=settings,
        knowledge=knowledge,
        pipeline=pipeline,  # type: ignore[arg-type]
        fixture_compiler=fixture_compiler or FakeFixtureCompiler(),  # type: ignore[arg-type]
        code_generator=generator or RecordingGenerator(),
        formatter=SourceFormatter(FormatterSettings(enabled=False)),
        cancel_token=cancel_token,
    )
