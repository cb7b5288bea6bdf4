"""Diagnose phase: map a step failure onto a known remediation."""

from __future__ import annotations

import hashlib
import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..errors import StepFailure
from ..memory.knowledge import KnowledgeBase
from ..memory.schema import FeatureFlag, KnowledgeEntry, RemediationAction, Step
from ..tools.commands import run_command
from . import StepPhase

LOGGER = logging.getLogger(__name__)

MAX_SIGNATURE_LENGTH = 240

_NORMALIZE_PATTERNS = [
    re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}[.\d]*Z?"),  # timestamps
    re.compile(r"0x[0-9a-fA-F]+"),  # addresses
    re.compile(r"(?:[A-Za-z]:)?(?:[\w.+-]*/)+(?=[\w.+-]+)"),  # directory prefixes
    re.compile(r":\d+(?::\d+)?"),  # line and column numbers
    re.compile(r"\b\d{5,}\b"),  # pids, sizes
]
_ERROR_LINE_RE = re.compile(
    r"(error|undefined reference|fatal|failed|segmentation fault|assertion|abort|"
    r"no tests were found|could not find|not found|unexpected)",
    re.IGNORECASE,
)
_NOISE_LINE_RE = re.compile(r"^(\s*$|-- |\s*\d+% tests passed|make(\[\d+\])?: \*\*\*)")


def normalize_line(text: str) -> str:
    """Strip volatile fragments so the same logical error yields the same text."""
    for pattern in _NORMALIZE_PATTERNS:
        text = pattern.sub("", text)
    return " ".join(text.split())


def first_error_line(diagnostics: str) -> str:
    """Return the first error-like line of ``diagnostics``, else its first meaningful line."""
    fallback = ""
    for line in diagnostics.splitlines():
        if _NOISE_LINE_RE.match(line):
            continue
        if not fallback:
            fallback = line
        if _ERROR_LINE_RE.search(line):
            return line
    return fallback


def build_signature(kind: str, diagnostics: str) -> str:
    """Build the lookup signature ``"<kind>: <normalized first error line>"``."""
    line = normalize_line(first_error_line(diagnostics)) or "no diagnostics"
    signature = f"{kind}: {line}"
    return signature[:MAX_SIGNATURE_LENGTH]


def signature_id(signature: str) -> str:
    """Stable short identifier derived from a signature."""
    return hashlib.sha256(signature.encode("utf-8")).hexdigest()[:16]


def reentry_phase_for(kind: str) -> StepPhase:
    """Stage to re-enter when a failure of ``kind`` is retried without changes."""
    if kind == "fixture-compile":
        return StepPhase.FIXTURE_PREP
    if kind == "codegen":
        return StepPhase.CODEGEN
    return StepPhase.PIPELINE


@dataclass(slots=True)
class DiagnoseRequest:
    """Input payload for the Diagnose phase."""

    step: Step
    failure: StepFailure
    attempt: int


@dataclass(slots=True)
class DiagnoseResponse:
    """Structured result of a knowledge base lookup and remediation."""

    signature: str
    reentry: StepPhase
    entry: Optional[KnowledgeEntry] = None
    hints: List[str] = field(default_factory=list)
    flags_added: List[FeatureFlag] = field(default_factory=list)
    commands_run: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.entry is not None

    def to_payload(self) -> dict:
        return {
            "signature": self.signature,
            "matched_entry": self.entry.id if self.entry else None,
            "reentry": self.reentry.value,
            "hints": list(self.hints),
            "flags_added": [flag.value for flag in self.flags_added],
            "commands_run": list(self.commands_run),
            "notes": list(self.notes),
        }


class Diagnoser:
    """Consult the knowledge base and apply the first matching entry's remediation."""

    def __init__(
        self,
        knowledge: KnowledgeBase,
        *,
        source_root: Path | None = None,
        command_timeout: float | None = 600.0,
    ) -> None:
        self.knowledge = knowledge
        self.source_root = source_root
        self.command_timeout = command_timeout

    def diagnose(self, request: DiagnoseRequest) -> DiagnoseResponse:
        failure = request.failure
        signature = build_signature(failure.kind, failure.diagnostics)
        entry = self.knowledge.match(f"{signature}\n{failure.diagnostics}")
        response = DiagnoseResponse(signature=signature, reentry=reentry_phase_for(failure.kind), entry=entry)
        if entry is None:
            LOGGER.warning(
                "Step %s attempt %s: no knowledge entry matches %r",
                request.step.ordinal,
                request.attempt,
                signature,
            )
            return response

        LOGGER.info(
            "Step %s attempt %s: matched knowledge entry %s (%s)",
            request.step.ordinal,
            request.attempt,
            entry.id,
            entry.root_cause or "no recorded root cause",
        )
        for action in entry.remediation:
            self._apply(action, request.step, response)

        if failure.kind == "fixture-compile" or response.flags_added:
            response.reentry = StepPhase.FIXTURE_PREP
        elif response.hints:
            response.reentry = StepPhase.CODEGEN
        return response

    def _apply(self, action: RemediationAction, step: Step, response: DiagnoseResponse) -> None:
        if action.kind == "regenerate":
            response.hints.append(action.value or "Regenerate the step's tests.")
        elif action.kind == "add_fixture_flag":
            self._add_fixture_flag(action.value, step, response)
        elif action.kind == "command":
            self._run_remediation_command(action.value, response)
        else:
            LOGGER.info("Remediation note: %s", action.value)
            response.notes.append(action.value)

    @staticmethod
    def _add_fixture_flag(value: str, step: Step, response: DiagnoseResponse) -> None:
        try:
            flag = FeatureFlag(value.strip())
        except ValueError:
            LOGGER.warning("Ignoring unknown fixture feature flag %r", value)
            return
        changed = False
        for fixture in step.fixtures:
            if flag not in fixture.flags:
                fixture.flags = sorted({*fixture.flags, flag}, key=lambda item: item.value)
                fixture.source_digest = None
                changed = True
        if changed:
            response.flags_added.append(flag)

    def _run_remediation_command(self, value: str, response: DiagnoseResponse) -> None:
        command = shlex.split(value)
        if not command:
            return
        result = run_command(command, cwd=self.source_root, timeout=self.command_timeout, stage="diagnose")
        response.commands_run.append(value)
        if not result.ok:
            LOGGER.warning("Remediation command %r exited with %s", value, result.exit_code)
            response.notes.append(f"command failed ({result.exit_code}): {value}")


__all__ = [
    "DiagnoseRequest",
    "DiagnoseResponse",
    "Diagnoser",
    "build_signature",
    "first_error_line",
    "normalize_line",
    "reentry_phase_for",
    "signature_id",
]
