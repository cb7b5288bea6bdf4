"""Configuration loading and typed settings for the coverage planner."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence

import yaml

from .errors import CovplanError
from .memory.schema import FeatureFlag

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "covplan.yaml"
DEFAULT_STAGE_TIMEOUT = 3600.0
DEFAULT_DIAGNOSE_ATTEMPTS = 3

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "paths": {
        "plans": "plans",
        "data": "data/covplan",
        "knowledge_base": "knowledge.yaml",
        "fixtures": "tests/unit/{module}/wasm-apps",
    },
    "pipeline": {
        "source_root": ".",
        "build_dir": "tests/unit/{module}/build",
        "coverage_flag": "-DCOLLECT_CODE_COVERAGE=1",
        "configure": ["cmake", "-S", "{test_dir}", "-B", "{build_dir}", "{coverage_flag}"],
        "build": ["cmake", "--build", "{build_dir}", "--parallel"],
        "test": ["ctest", "--test-dir", "{build_dir}", "-R", "{pattern}", "--output-on-failure"],
        "coverage_capture": [
            "lcov",
            "--capture",
            "--directory",
            "{build_dir}",
            "--output-file",
            "{coverage_file}",
            "--rc",
            "lcov_branch_coverage=1",
        ],
        "coverage_summary": ["lcov", "--summary", "{coverage_file}", "--rc", "lcov_branch_coverage=1"],
        "timeout_seconds": DEFAULT_STAGE_TIMEOUT,
    },
    "fixtures": {
        "compiler": ["wat2wasm", "{source}", "-o", "{output}"],
        "flag_options": {
            FeatureFlag.LARGE_ADDRESS.value: "--enable-memory64",
            FeatureFlag.ATOMICS.value: "--enable-threads",
            FeatureFlag.SIMD.value: "--enable-simd",
            FeatureFlag.BULK_MEMORY.value: "--enable-bulk-memory",
            FeatureFlag.REFERENCE_TYPES.value: "--enable-reference-types",
        },
        "timeout_seconds": 120,
    },
    "codegen": {
        "command": [],
        "timeout_seconds": 900,
    },
    "diagnose": {
        "max_attempts": DEFAULT_DIAGNOSE_ATTEMPTS,
        "retry_unmatched": True,
        "seed_knowledge": True,
        "command_timeout_seconds": 600,
    },
    "formatter": {
        "enabled": True,
        "command": ["clang-format", "-i", "--style=file"],
        "extensions": [".c", ".cc", ".cpp", ".h", ".hpp"],
    },
    "execution": {
        "continue_on_failure": False,
    },
}


class ConfigError(CovplanError):
    """Raised when the configuration file is unreadable or malformed."""


def default_config() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            base[key] = _merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def load_config(config_path: Path | str | None) -> Dict[str, Any]:
    """Load YAML configuration layered over the defaults.

    A missing file yields the defaults so the tool works out of the box.
    """
    config = default_config()
    if config_path is None:
        return config
    path = Path(config_path)
    if not path.exists():
        LOGGER.debug("Config file %s not found; using defaults", path)
        return config
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return _merge(config, data)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def _as_int(value: Any, *, minimum: int | None = None) -> int | None:
    try:
        candidate = int(value)
    except (TypeError, ValueError):
        return None
    if minimum is not None and candidate < minimum:
        return minimum
    return candidate


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _as_command(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(value.split())
    if isinstance(value, Sequence):
        return tuple(str(part) for part in value)
    return ()


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    return value if isinstance(value, Mapping) else {}


@dataclass(slots=True)
class PipelineSettings:
    """Commands and limits for the build → test → coverage cycle."""

    source_root: Path = Path(".")
    build_dir: str = "tests/unit/{module}/build"
    coverage_flag: str = "-DCOLLECT_CODE_COVERAGE=1"
    configure: tuple[str, ...] = ()
    build: tuple[str, ...] = ()
    test: tuple[str, ...] = ()
    coverage_capture: tuple[str, ...] = ()
    coverage_summary: tuple[str, ...] = ()
    timeout_seconds: float = DEFAULT_STAGE_TIMEOUT


@dataclass(slots=True)
class FixtureSettings:
    """Text-to-binary assembler invocation."""

    directory: str = "tests/unit/{module}/wasm-apps"
    compiler: tuple[str, ...] = ()
    flag_options: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class CodegenSettings:
    command: tuple[str, ...] = ()
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class DiagnoseSettings:
    max_attempts: int = DEFAULT_DIAGNOSE_ATTEMPTS
    retry_unmatched: bool = True
    command_timeout_seconds: float = 600.0


@dataclass(slots=True)
class FormatterSettings:
    enabled: bool = True
    command: tuple[str, ...] = ()
    extensions: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Typed view over the raw configuration mapping."""

    data_root: Path = Path("data/covplan")
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    fixtures: FixtureSettings = field(default_factory=FixtureSettings)
    codegen: CodegenSettings = field(default_factory=CodegenSettings)
    diagnose: DiagnoseSettings = field(default_factory=DiagnoseSettings)
    formatter: FormatterSettings = field(default_factory=FormatterSettings)
    continue_on_failure: bool = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base_dir: Path | None = None) -> "Settings":
        """Coerce a (possibly partial) config mapping into typed settings."""
        merged = _merge(default_config(), config)
        root = Path(base_dir) if base_dir is not None else Path(".")

        def _resolve(value: Any, fallback: str) -> Path:
            candidate = Path(str(value).strip()) if isinstance(value, str) and value.strip() else Path(fallback)
            return candidate if candidate.is_absolute() else root / candidate

        paths = _section(merged, "paths")
        pipeline_cfg = _section(merged, "pipeline")
        fixtures_cfg = _section(merged, "fixtures")
        codegen_cfg = _section(merged, "codegen")
        diagnose_cfg = _section(merged, "diagnose")
        formatter_cfg = _section(merged, "formatter")
        execution_cfg = _section(merged, "execution")

        pipeline = PipelineSettings(
            source_root=_resolve(pipeline_cfg.get("source_root"), "."),
            build_dir=str(pipeline_cfg.get("build_dir") or "tests/unit/{module}/build"),
            coverage_flag=str(pipeline_cfg.get("coverage_flag") or ""),
            configure=_as_command(pipeline_cfg.get("configure")),
            build=_as_command(pipeline_cfg.get("build")),
            test=_as_command(pipeline_cfg.get("test")),
            coverage_capture=_as_command(pipeline_cfg.get("coverage_capture")),
            coverage_summary=_as_command(pipeline_cfg.get("coverage_summary")),
        )
        timeout = _as_float(pipeline_cfg.get("timeout_seconds"))
        if timeout is not None and timeout > 0:
            pipeline.timeout_seconds = timeout

        raw_flags = fixtures_cfg.get("flag_options")
        fixtures = FixtureSettings(
            directory=str(paths.get("fixtures") or "tests/unit/{module}/wasm-apps"),
            compiler=_as_command(fixtures_cfg.get("compiler")),
            flag_options={str(key): str(value) for key, value in (raw_flags or {}).items()},
        )
        fixture_timeout = _as_float(fixtures_cfg.get("timeout_seconds"))
        if fixture_timeout is not None and fixture_timeout > 0:
            fixtures.timeout_seconds = fixture_timeout

        codegen = CodegenSettings(command=_as_command(codegen_cfg.get("command")))
        codegen_timeout = _as_float(codegen_cfg.get("timeout_seconds"))
        if codegen_timeout is not None and codegen_timeout > 0:
            codegen.timeout_seconds = codegen_timeout

        diagnose = DiagnoseSettings()
        attempts = _as_int(diagnose_cfg.get("max_attempts"), minimum=0)
        if attempts is not None:
            diagnose.max_attempts = attempts
        retry_unmatched = _as_bool(diagnose_cfg.get("retry_unmatched"))
        if retry_unmatched is not None:
            diagnose.retry_unmatched = retry_unmatched
        command_timeout = _as_float(diagnose_cfg.get("command_timeout_seconds"))
        if command_timeout is not None and command_timeout > 0:
            diagnose.command_timeout_seconds = command_timeout

        formatter = FormatterSettings(
            enabled=bool(_as_bool(formatter_cfg.get("enabled"))),
            command=_as_command(formatter_cfg.get("command")),
            extensions=tuple(str(item).lower() for item in formatter_cfg.get("extensions") or ()),
        )

        return cls(
            data_root=_resolve(paths.get("data"), "data/covplan"),
            pipeline=pipeline,
            fixtures=fixtures,
            codegen=codegen,
            diagnose=diagnose,
            formatter=formatter,
            continue_on_failure=bool(_as_bool(execution_cfg.get("continue_on_failure"))),
        )


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "CodegenSettings",
    "DiagnoseSettings",
    "FixtureSettings",
    "FormatterSettings",
    "PipelineSettings",
    "Settings",
    "default_config",
    "load_config",
    "write_config",
]
