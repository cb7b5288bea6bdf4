"""Optional source formatting of generated test files."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Literal

from ..config import FormatterSettings
from ..errors import EnvironmentFailure
from .commands import run_command

LOGGER = logging.getLogger(__name__)

FormatStatus = Literal["formatted", "skipped", "failed"]


@dataclass(slots=True)
class FormatResult:
    status: FormatStatus
    files: List[Path] = field(default_factory=list)
    message: str = ""


class SourceFormatter:
    """Run clang-format (or a configured equivalent) in place on touched files."""

    def __init__(self, settings: FormatterSettings | None = None) -> None:
        self.settings = settings or FormatterSettings(command=("clang-format", "-i"))

    def format(self, paths: Iterable[Path], *, cwd: Path | None = None) -> FormatResult:
        if not self.settings.enabled or not self.settings.command:
            return FormatResult(status="skipped", message="formatter disabled")
        extensions = set(self.settings.extensions)
        files = sorted(
            {
                Path(path)
                for path in paths
                if Path(path).is_file() and (not extensions or Path(path).suffix.lower() in extensions)
            }
        )
        if not files:
            return FormatResult(status="skipped", message="no formattable files")

        executable = self.settings.command[0]
        if shutil.which(executable) is None:
            LOGGER.info("Formatter %s not found; skipping", executable)
            return FormatResult(status="skipped", files=files, message=f"{executable} not found")

        command = (*self.settings.command, *(str(path) for path in files))
        try:
            result = run_command(command, cwd=cwd, timeout=300, stage="format")
        except EnvironmentFailure as error:
            LOGGER.warning("Formatter could not run: %s", error)
            return FormatResult(status="failed", files=files, message=str(error))
        if not result.ok:
            LOGGER.warning("Formatter exited with %s: %s", result.exit_code, result.output.strip()[:500])
            return FormatResult(status="failed", files=files, message=result.output.strip())
        return FormatResult(status="formatted", files=files)


__all__ = ["FormatResult", "SourceFormatter"]
