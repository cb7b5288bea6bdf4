"""Boundary to the text-to-binary module assembler used for test fixtures."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from ..config import DEFAULT_CONFIG_TEMPLATE, FixtureSettings
from ..errors import EnvironmentFailure, FixtureCompileFailure
from ..memory.schema import FeatureFlag, Fixture
from .commands import CommandResult, format_command, run_command

LOGGER = logging.getLogger(__name__)

FIXTURE_STAGE = "fixture"


def fixture_digest(source: bytes, flags: Iterable[FeatureFlag]) -> str:
    """Fingerprint a fixture source together with the feature flags it is built with."""
    digest = hashlib.sha256()
    digest.update(source)
    digest.update(b"\0")
    digest.update(",".join(sorted(FeatureFlag(flag).value for flag in flags)).encode("utf-8"))
    return digest.hexdigest()


@dataclass(slots=True)
class FixtureCompileResult:
    fixture: Fixture
    compiled: bool
    command: CommandResult | None = None


class FixtureCompiler:
    """Compile ``.wat`` sources into ``.wasm`` binaries with the requested proposals enabled."""

    def __init__(
        self,
        command: Sequence[str] | None = None,
        *,
        flag_options: Mapping[str, str] | None = None,
        timeout: float | None = 120.0,
    ) -> None:
        defaults = DEFAULT_CONFIG_TEMPLATE["fixtures"]
        self.command = tuple(command) if command else tuple(defaults["compiler"])
        self.flag_options = dict(flag_options) if flag_options is not None else dict(defaults["flag_options"])
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: FixtureSettings) -> "FixtureCompiler":
        return cls(
            settings.compiler or None,
            flag_options=settings.flag_options or None,
            timeout=settings.timeout_seconds,
        )

    def options_for(self, flags: Iterable[FeatureFlag]) -> tuple[str, ...]:
        options: list[str] = []
        for flag in sorted({FeatureFlag(item) for item in flags}, key=lambda item: item.value):
            option = self.flag_options.get(flag.value)
            if option is None:
                LOGGER.warning("No assembler option configured for feature flag %s", flag.value)
                continue
            options.append(option)
        return tuple(options)

    def build_command(self, source: Path, output: Path, flags: Iterable[FeatureFlag]) -> tuple[str, ...]:
        values: Mapping[str, Any] = {"source": str(source), "output": str(output)}
        rendered = format_command(self.command, values)
        if not rendered:
            raise EnvironmentFailure("Fixture compiler command is empty", stage=FIXTURE_STAGE)
        return (rendered[0], *self.options_for(flags), *rendered[1:])

    def compile(self, fixture: Fixture, fixture_dir: Path, *, force: bool = False) -> FixtureCompileResult:
        """Compile ``fixture`` unless its source and flags are unchanged since the last build.

        Updates ``fixture.source_digest`` on success. Assembler errors raise
        :class:`FixtureCompileFailure`; a missing assembler raises
        :class:`EnvironmentFailure`.
        """
        source_path = fixture_dir / fixture.source
        binary_path = fixture_dir / fixture.binary
        try:
            source_bytes = source_path.read_bytes()
        except FileNotFoundError as error:
            raise FixtureCompileFailure(
                f"fixture source not found: {source_path}", stage=FIXTURE_STAGE
            ) from error
        except OSError as error:
            raise EnvironmentFailure(
                f"Failed to read fixture source {source_path}: {error}", stage=FIXTURE_STAGE
            ) from error

        digest = fixture_digest(source_bytes, fixture.flags)
        if not force and fixture.source_digest == digest and binary_path.is_file():
            LOGGER.debug("Fixture %s is up to date", fixture.name)
            return FixtureCompileResult(fixture=fixture, compiled=False)

        try:
            binary_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise EnvironmentFailure(
                f"Failed to create fixture output directory {binary_path.parent}: {error}",
                stage=FIXTURE_STAGE,
            ) from error

        command = self.build_command(source_path, binary_path, fixture.flags)
        result = run_command(command, cwd=fixture_dir, timeout=self.timeout, stage=FIXTURE_STAGE)
        if not result.ok:
            raise FixtureCompileFailure(result.output or f"exit code {result.exit_code}", stage=FIXTURE_STAGE)
        fixture.source_digest = digest
        LOGGER.info(
            "Compiled fixture %s (%s)",
            fixture.name,
            ", ".join(flag.value for flag in fixture.flags) or "no extra features",
        )
        return FixtureCompileResult(fixture=fixture, compiled=True, command=result)


__all__ = ["FIXTURE_STAGE", "FixtureCompileResult", "FixtureCompiler", "fixture_digest"]
