"""Code generation phase: request/response contract and collaborators."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import CodegenSettings
from ..errors import CodeGenerationFailure, EnvironmentFailure
from ..memory.schema import Fixture, Plan, Step
from ..tools.commands import run_command
from ..utils.fs import atomic_write_text
from ..utils.slug import default_test_pattern

LOGGER = logging.getLogger(__name__)

CODEGEN_STAGE = "codegen"


@dataclass(slots=True)
class TestCaseSpec:
    __test__ = False

    name: str
    function: str
    scenario: str
    description: str = ""
    requires_fixture: bool = False
    fixture: Optional[str] = None


@dataclass(slots=True)
class FixtureHandle:
    name: str
    source: str
    binary: str
    flags: List[str] = field(default_factory=list)


@dataclass(slots=True)
class CodeGenRequest:
    """Input payload for generating a step's unit tests."""

    module: str
    test_dir: str
    step_ordinal: int
    step_name: str
    test_pattern: str
    target_functions: List[str]
    test_cases: List[TestCaseSpec] = field(default_factory=list)
    fixtures: List[FixtureHandle] = field(default_factory=list)
    hints: List[str] = field(default_factory=list)
    attempt: int = 1

    @classmethod
    def for_step(cls, plan: Plan, step: Step, *, hints: Sequence[str] = (), attempt: int = 1) -> "CodeGenRequest":
        return cls(
            module=plan.module,
            test_dir=plan.test_dir,
            step_ordinal=step.ordinal,
            step_name=step.name,
            test_pattern=step.test_pattern or default_test_pattern(plan.module, step.ordinal, step.name),
            target_functions=list(step.target_functions),
            test_cases=[
                TestCaseSpec(
                    name=case.name,
                    function=case.function,
                    scenario=case.scenario,
                    description=case.description,
                    requires_fixture=bool(case.requires_fixture),
                    fixture=case.fixture,
                )
                for case in step.test_cases
            ],
            fixtures=[fixture_handle(fixture) for fixture in step.fixtures],
            hints=list(hints),
            attempt=attempt,
        )


@dataclass(slots=True)
class GeneratedFile:
    path: str
    content: str


@dataclass(slots=True)
class CodeGenResponse:
    """Files produced for a step plus free-form notes from the generator."""

    files: List[GeneratedFile] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


@dataclass(slots=True)
class FixtureSourceRequest:
    """Input payload for writing a fixture's WebAssembly text."""

    module: str
    step_ordinal: int
    fixture: FixtureHandle
    scenarios: List[str] = field(default_factory=list)
    hints: List[str] = field(default_factory=list)


def fixture_handle(fixture: Fixture) -> FixtureHandle:
    return FixtureHandle(
        name=fixture.name,
        source=fixture.source,
        binary=fixture.binary,
        flags=[flag.value for flag in fixture.flags],
    )


class _GeneratedFilePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str = Field(min_length=1)
    content: str


class _GenerationPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    files: List[_GeneratedFilePayload] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
    wat: Optional[str] = None


class CodeGenerator:
    """Interface for collaborators that author test sources and fixture text."""

    def generate_tests(self, request: CodeGenRequest) -> CodeGenResponse:  # pragma: no cover - interface
        raise NotImplementedError

    def generate_fixture_source(self, request: FixtureSourceRequest) -> Optional[str]:  # pragma: no cover
        raise NotImplementedError


class ExistingSourcesGenerator(CodeGenerator):
    """Tests and fixture sources are authored by hand; nothing is generated."""

    def generate_tests(self, request: CodeGenRequest) -> CodeGenResponse:
        LOGGER.debug("Using existing sources for step %s", request.step_ordinal)
        return CodeGenResponse()

    def generate_fixture_source(self, request: FixtureSourceRequest) -> Optional[str]:
        return None


class CommandCodeGenerator(CodeGenerator):
    """Delegate generation to an external command speaking JSON over stdin/stdout.

    The command receives ``{"kind": "tests" | "fixture", "request": {...}}``
    and must print ``{"files": [{"path", "content"}], "notes": [...]}`` for
    tests or ``{"wat": "..."}`` for fixtures.
    """

    def __init__(self, command: Sequence[str], *, cwd: Path | None = None, timeout: float | None = 900.0) -> None:
        if not command:
            raise ValueError("CommandCodeGenerator requires a command")
        self.command = tuple(command)
        self.cwd = cwd
        self.timeout = timeout

    def _invoke(self, kind: str, request: Any) -> _GenerationPayload:
        payload = json.dumps({"kind": kind, "request": asdict(request)}, sort_keys=True)
        result = run_command(
            self.command,
            cwd=self.cwd,
            timeout=self.timeout,
            stage=CODEGEN_STAGE,
            input_text=payload,
        )
        if not result.ok:
            raise CodeGenerationFailure(
                result.output or f"generator exited with {result.exit_code}", stage=CODEGEN_STAGE
            )
        try:
            return _GenerationPayload.model_validate_json(result.stdout)
        except ValidationError as error:
            raise CodeGenerationFailure(f"generator returned invalid JSON: {error}", stage=CODEGEN_STAGE) from error

    def generate_tests(self, request: CodeGenRequest) -> CodeGenResponse:
        parsed = self._invoke("tests", request)
        return CodeGenResponse(
            files=[GeneratedFile(path=item.path, content=item.content) for item in parsed.files],
            notes=list(parsed.notes),
        )

    def generate_fixture_source(self, request: FixtureSourceRequest) -> Optional[str]:
        parsed = self._invoke("fixture", request)
        if parsed.wat is None or not parsed.wat.strip():
            return None
        return parsed.wat


def build_code_generator(settings: CodegenSettings, *, cwd: Path | None = None) -> CodeGenerator:
    """Return the command-backed generator when configured, else the hand-authored one."""
    if settings.command:
        return CommandCodeGenerator(settings.command, cwd=cwd, timeout=settings.timeout_seconds)
    return ExistingSourcesGenerator()


def write_generated_files(response: CodeGenResponse, root: Path) -> List[Path]:
    """Write generated files beneath ``root`` and return the touched paths."""
    base = Path(root).resolve()
    touched: List[Path] = []
    for item in response.files:
        target = (base / item.path).resolve()
        if not target.is_relative_to(base):
            raise CodeGenerationFailure(f"generated path escapes the source root: {item.path}", stage=CODEGEN_STAGE)
        try:
            atomic_write_text(target, item.content)
        except OSError as error:
            raise EnvironmentFailure(f"Failed to write {target}: {error}", stage=CODEGEN_STAGE) from error
        touched.append(target)
    if touched:
        LOGGER.info("Wrote %s generated file(s)", len(touched))
    return touched


__all__ = [
    "CODEGEN_STAGE",
    "CodeGenRequest",
    "CodeGenResponse",
    "CodeGenerator",
    "CommandCodeGenerator",
    "ExistingSourcesGenerator",
    "FixtureHandle",
    "FixtureSourceRequest",
    "GeneratedFile",
    "TestCaseSpec",
    "build_code_generator",
    "fixture_handle",
    "write_generated_files",
]
