"""Per-step run artifacts written after every step checkpoint."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from ..utils.slug import slugify

LOGGER = logging.getLogger(__name__)

__all__ = ["RunLogEntry", "load_run_log", "write_run_log"]


def _json_safe(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def write_run_log(
    data_root: Path,
    module: str,
    step_ordinal: int,
    payload: Mapping[str, Any],
) -> Optional[Path]:
    """Persist ``payload`` as ``<data_root>/runs/<module>/step-<n>-<timestamp>.json``.

    Returns ``None`` when the artifact cannot be written; the plan document
    remains the source of truth so a missing artifact is not fatal.
    """
    logs_root = Path(data_root) / "runs" / slugify(module, fallback="plan")
    timestamp = datetime.now(timezone.utc)
    entry: dict[str, Any] = {
        "timestamp": timestamp.isoformat(),
        "module": module,
        "step": step_ordinal,
    }
    entry.update(_json_safe(payload))
    log_path = logs_root / f"step-{step_ordinal}-{timestamp.strftime('%Y%m%dT%H%M%S%fZ')}.json"
    try:
        logs_root.mkdir(parents=True, exist_ok=True)
        with log_path.open("w", encoding="utf-8") as handle:
            json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
    except OSError as error:
        LOGGER.warning("Failed to write run artifact %s: %s", log_path, error)
        return None
    return log_path


@dataclass(slots=True)
class RunLogEntry:
    """In-memory view of a stored step run artifact."""

    path: Path
    module: str
    step: int
    payload: Mapping[str, Any]

    @property
    def status(self) -> str | None:
        value = self.payload.get("status")
        return value if isinstance(value, str) else None

    @property
    def attempts(self) -> list[Mapping[str, Any]]:
        value = self.payload.get("attempts")
        if isinstance(value, list):
            return [item for item in value if isinstance(item, Mapping)]
        return []


def load_run_log(path: Path | str) -> RunLogEntry:
    """Load a run artifact from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return RunLogEntry(
        path=log_path,
        module=str(payload.get("module") or ""),
        step=int(payload.get("step") or 0),
        payload=payload,
    )
