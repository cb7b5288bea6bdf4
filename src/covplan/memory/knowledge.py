"""Knowledge base of failure signatures and their verified remediations."""

from __future__ import annotations

import logging
import re
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Pattern

import yaml
from pydantic import ValidationError

from ..errors import CovplanError
from ..utils.fs import atomic_write_yaml
from .schema import KnowledgeEntry, RemediationAction, dump_document

LOGGER = logging.getLogger(__name__)

DEFAULT_KNOWLEDGE_PATH = Path("knowledge.yaml")

_SEED_RULES: tuple[dict[str, Any], ...] = (
    {
        "id": "seed::link::undefined-reference",
        "signature": "undefined reference to",
        "root_cause": (
            "The unit test target links against a runtime source file that is not listed in the "
            "test directory's CMakeLists.txt, or calls a function that is compiled out by the "
            "current build options."
        ),
        "remediation": [
            {
                "kind": "regenerate",
                "value": (
                    "Only call functions that are compiled into the test target; add missing runtime "
                    "sources to the test CMakeLists.txt instead of declaring them extern."
                ),
            },
        ],
    },
    {
        "id": "seed::fixture::memory64-disabled",
        "signature": r"fixture-compile:.*(memory64|i64 index|64-bit memory)",
        "match": "regex",
        "root_cause": "The fixture declares a 64-bit memory but was assembled without memory64 enabled.",
        "remediation": [{"kind": "add_fixture_flag", "value": "memory64"}],
    },
    {
        "id": "seed::fixture::threads-disabled",
        "signature": r"fixture-compile:.*(shared memor|atomic)",
        "match": "regex",
        "root_cause": "Shared memory or atomic instructions require the threads proposal.",
        "remediation": [{"kind": "add_fixture_flag", "value": "threads"}],
    },
    {
        "id": "seed::fixture::simd-disabled",
        "signature": r"fixture-compile:.*(v128|simd)",
        "match": "regex",
        "root_cause": "Vector instructions require the SIMD proposal.",
        "remediation": [{"kind": "add_fixture_flag", "value": "simd"}],
    },
    {
        "id": "seed::fixture::reference-types-disabled",
        "signature": r"fixture-compile:.*(externref|funcref|ref\.null|table\.(get|set|grow))",
        "match": "regex",
        "root_cause": "Reference-typed tables and values require the reference-types proposal.",
        "remediation": [{"kind": "add_fixture_flag", "value": "reference-types"}],
    },
    {
        "id": "seed::fixture::bulk-memory-disabled",
        "signature": r"fixture-compile:.*(memory\.(copy|fill|init)|data\.drop)",
        "match": "regex",
        "root_cause": "Bulk memory instructions require the bulk-memory proposal.",
        "remediation": [{"kind": "add_fixture_flag", "value": "bulk-memory"}],
    },
    {
        "id": "seed::test::no-tests-matched",
        "signature": "No tests were found",
        "root_cause": "The generated test names do not match the step's test filter pattern.",
        "remediation": [
            {
                "kind": "regenerate",
                "value": "Name every generated test so that it matches the step test pattern exactly.",
            },
        ],
    },
    {
        "id": "seed::configure::missing-package",
        "signature": "Could not find a package configuration file",
        "root_cause": "A CMake dependency of the unit test project is not installed or not on CMAKE_PREFIX_PATH.",
        "remediation": [
            {"kind": "note", "value": "Install the missing package or export CMAKE_PREFIX_PATH, then re-run."},
        ],
    },
    {
        "id": "seed::test::death-test-crash",
        "signature": r"(Segmentation fault|SIGSEGV|Subprocess aborted)",
        "match": "regex",
        "root_cause": (
            "A test dereferenced a module or instance handle after a failed load/instantiate, "
            "usually because the runtime was not initialised for the test fixture."
        ),
        "remediation": [
            {
                "kind": "regenerate",
                "value": (
                    "Initialise the runtime in SetUp, assert load/instantiate results before use and "
                    "release modules in TearDown."
                ),
            },
        ],
    },
)


def get_seed_entries() -> tuple[KnowledgeEntry, ...]:
    """Return the built-in knowledge base seed."""
    return tuple(
        KnowledgeEntry(
            id=rule["id"],
            signature=rule["signature"],
            match=rule.get("match", "substring"),
            root_cause=rule.get("root_cause", ""),
            remediation=[RemediationAction(**action) for action in rule.get("remediation", [])],
            source="seed",
        )
        for rule in _SEED_RULES
    )


@lru_cache(maxsize=256)
def _compile(signature: str) -> Pattern[str]:
    return re.compile(signature, re.IGNORECASE | re.DOTALL)


def entry_matches(entry: KnowledgeEntry, text: str) -> bool:
    """Return ``True`` when ``entry``'s signature occurs in ``text``."""
    if entry.match == "regex":
        try:
            return _compile(entry.signature).search(text) is not None
        except re.error as error:
            LOGGER.warning("Ignoring knowledge entry %s with invalid pattern: %s", entry.id, error)
            return False
    return entry.signature.lower() in text.lower()


class KnowledgeBaseError(CovplanError):
    """Raised when the knowledge base file cannot be read."""


class KnowledgeBase:
    """Ordered, append-only catalogue consulted with first-match-wins lookup."""

    def __init__(
        self,
        path: Path | str | None = DEFAULT_KNOWLEDGE_PATH,
        *,
        entries: Iterable[KnowledgeEntry] | None = None,
        seed: bool = True,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._seed = seed
        if entries is not None:
            self._entries: List[KnowledgeEntry] = list(entries)
        else:
            self._entries = self._read()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "KnowledgeBase":
        paths = config.get("paths") or {}
        location = paths.get("knowledge_base")
        diagnose = config.get("diagnose") or {}
        seed = diagnose.get("seed_knowledge", True)
        if isinstance(location, str) and location.strip():
            return cls(Path(location.strip()), seed=bool(seed))
        return cls(seed=bool(seed))

    @property
    def entries(self) -> tuple[KnowledgeEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def match(self, text: str) -> Optional[KnowledgeEntry]:
        """Return the first entry, in file order, whose signature matches ``text``."""
        if not text:
            return None
        for entry in self._entries:
            if entry_matches(entry, text):
                return entry
        return None

    def append(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        """Persist ``entry``; an existing entry with the same signature is replaced in place."""
        with self._lock:
            current = self._read() if self.path is not None else list(self._entries)
            replaced = False
            for index, existing in enumerate(current):
                if existing.signature == entry.signature or existing.id == entry.id:
                    current[index] = entry
                    replaced = True
                    break
            if not replaced:
                current.append(entry)
            if self.path is not None:
                atomic_write_yaml(self.path, {"entries": [dump_document(item) for item in current]})
            self._entries = current
        LOGGER.info(
            "%s knowledge entry %s (%s)",
            "Replaced" if replaced else "Appended",
            entry.id,
            entry.signature,
        )
        return entry

    def _read(self) -> List[KnowledgeEntry]:
        seed = list(get_seed_entries()) if self._seed else []
        if self.path is None or not self.path.is_file():
            return seed
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as error:
            raise KnowledgeBaseError(f"Failed to read knowledge base {self.path}: {error}") from error

        raw_entries = data.get("entries") if isinstance(data, dict) else data
        if not raw_entries:
            return seed
        if not isinstance(raw_entries, list):
            raise KnowledgeBaseError(f"Knowledge base {self.path} must contain a list of entries")
        entries: List[KnowledgeEntry] = []
        for raw in raw_entries:
            try:
                entries.append(KnowledgeEntry.model_validate(raw))
            except ValidationError as error:
                raise KnowledgeBaseError(f"Invalid knowledge entry in {self.path}: {error}") from error
        return entries


__all__ = ["KnowledgeBase", "KnowledgeBaseError", "entry_matches", "get_seed_entries"]
