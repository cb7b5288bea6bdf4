"""Subprocess helpers shared by the pipeline, fixture compiler and formatter."""

from __future__ import annotations

import logging
import os
import string
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Sequence

from ..errors import EnvironmentFailure

LOGGER = logging.getLogger(__name__)

_FORMATTER = string.Formatter()


@dataclass(slots=True)
class CommandResult:
    """Captured outcome of a single external command."""

    command: tuple[str, ...]
    cwd: Path
    exit_code: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, in that order."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def format_command(template: Sequence[str], values: Mapping[str, object]) -> tuple[str, ...]:
    """Substitute ``{placeholder}`` fields in each token of ``template``.

    Tokens that render to an empty string are dropped so optional
    placeholders (for example an empty coverage flag) vanish cleanly.
    Unknown placeholders raise :class:`KeyError`.
    """
    rendered: list[str] = []
    for token in template:
        fields = {name for _, name, _, _ in _FORMATTER.parse(token) if name}
        missing = fields.difference(values)
        if missing:
            raise KeyError(f"Unknown placeholder(s) {sorted(missing)} in command token {token!r}")
        text = token.format(**{name: values[name] for name in fields}) if fields else token
        if text:
            rendered.append(text)
    return tuple(rendered)


def run_command(
    command: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    stage: str | None = None,
    input_text: str | None = None,
) -> CommandResult:
    """Run ``command`` and capture its output.

    A non-zero exit code is returned to the caller. A missing executable,
    an expired timeout or an OS-level error raises :class:`EnvironmentFailure`.
    """
    invocation = tuple(str(part) for part in command)
    if not invocation:
        raise EnvironmentFailure("Empty command", stage=stage)
    workdir = Path(cwd or Path.cwd())
    LOGGER.debug("Running %s in %s", " ".join(invocation), workdir)
    started = time.monotonic()
    try:
        process = subprocess.run(
            invocation,
            cwd=workdir,
            env=_merge_env(env),
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as error:
        raise EnvironmentFailure(
            f"Executable not found: {invocation[0]} ({error})", stage=stage, command=invocation
        ) from error
    except subprocess.TimeoutExpired as error:
        raise EnvironmentFailure(
            f"Command timed out after {timeout:g}s: {' '.join(invocation)}",
            stage=stage,
            command=invocation,
        ) from error
    except OSError as error:
        raise EnvironmentFailure(
            f"Failed to run {' '.join(invocation)}: {error}", stage=stage, command=invocation
        ) from error
    duration = time.monotonic() - started
    LOGGER.debug("%s exited with %s after %.1fs", invocation[0], process.returncode, duration)
    return CommandResult(
        command=invocation,
        cwd=workdir,
        exit_code=process.returncode,
        stdout=process.stdout or "",
        stderr=process.stderr or "",
        duration=duration,
    )


__all__ = ["CommandResult", "format_command", "run_command"]
