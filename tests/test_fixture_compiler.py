from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from covplan.errors import FixtureCompileFailure
from covplan.memory.schema import FeatureFlag, Fixture
from covplan.tools import fixture_compiler as fixture_module
from covplan.tools.commands import CommandResult
from covplan.tools.fixture_compiler import FixtureCompiler, fixture_digest


@pytest.fixture()
def calls(monkeypatch: pytest.MonkeyPatch) -> List[tuple[str, ...]]:
    recorded: List[tuple[str, ...]] = []

    def fake_run(command, *, cwd=None, timeout=None, stage=None, **_: object) -> CommandResult:
        recorded.append(tuple(command))
        output = Path(command[command.index("-o") + 1])
        output.write_bytes(b"\0asm")
        return CommandResult(tuple(command), Path(cwd), 0, "", "", 0.01)

    monkeypatch.setattr(fixture_module, "run_command", fake_run)
    return recorded


def _fixture(tmp_path: Path, flags: list[FeatureFlag]) -> Fixture:
    (tmp_path / "step2_atomics.wat").write_text("(module (memory 1 1 shared))\n", encoding="utf-8")
    return Fixture(name="step2_atomics", source="step2_atomics.wat", binary="step2_atomics.wasm", flags=flags)


def test_flags_become_assembler_options(tmp_path: Path, calls) -> None:
    fixture = _fixture(tmp_path, [FeatureFlag.LARGE_ADDRESS, FeatureFlag.ATOMICS])

    result = FixtureCompiler().compile(fixture, tmp_path)

    assert result.compiled is True
    command = calls[0]
    assert command[0] == "wat2wasm"
    assert command[1:3] == ("--enable-memory64", "--enable-threads")
    assert fixture.source_digest == fixture_digest(
        (tmp_path / "step2_atomics.wat").read_bytes(), fixture.flags
    )


def test_unchanged_fixture_is_not_recompiled(tmp_path: Path, calls) -> None:
    fixture = _fixture(tmp_path, [FeatureFlag.ATOMICS])
    compiler = FixtureCompiler()

    compiler.compile(fixture, tmp_path)
    second = compiler.compile(fixture, tmp_path)

    assert second.compiled is False
    assert len(calls) == 1


def test_added_flag_forces_recompile(tmp_path: Path, calls) -> None:
    fixture = _fixture(tmp_path, [FeatureFlag.ATOMICS])
    compiler = FixtureCompiler()
    compiler.compile(fixture, tmp_path)

    fixture.flags = [FeatureFlag.ATOMICS, FeatureFlag.SIMD]
    compiler.compile(fixture, tmp_path)

    assert len(calls) == 2
    assert "--enable-simd" in calls[1]


def test_missing_source_is_a_fixture_failure(tmp_path: Path, calls) -> None:
    fixture = Fixture(name="absent", source="absent.wat", binary="absent.wasm")

    with pytest.raises(FixtureCompileFailure, match="fixture source not found"):
        FixtureCompiler().compile(fixture, tmp_path)
    assert calls == []


def test_assembler_error_raises_fixture_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing(command, *, cwd=None, timeout=None, stage=None, **_: object) -> CommandResult:
        return CommandResult(tuple(command), Path(cwd), 1, "", "error: memory64 support not enabled", 0.01)

    monkeypatch.setattr(fixture_module, "run_command", failing)
    fixture = _fixture(tmp_path, [])

    with pytest.raises(FixtureCompileFailure) as excinfo:
        FixtureCompiler().compile(fixture, tmp_path)

    assert "memory64" in excinfo.value.diagnostics
    assert fixture.source_digest is None
