"""Naming helpers for step directories, fixture files and test filters."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_SLUG_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")
_WORD_PATTERN: Pattern[str] = re.compile(r"[A-Za-z0-9]+")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 64) -> str:
    """Normalize ``value`` into a lowercase, filesystem-friendly slug."""
    source = (value or "").strip().lower() or fallback.lower()
    slug = _HYPHEN_COLLAPSE.sub("-", _SLUG_PATTERN.sub("-", source)).strip("-")
    if not slug:
        slug = fallback.lower() or "item"
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


def camel_case(value: str | None, *, fallback: str = "Item") -> str:
    """Join the alphanumeric words of ``value`` into an UpperCamelCase identifier."""
    words = _WORD_PATTERN.findall(value or "")
    if not words:
        return fallback
    joined = "".join(word[:1].upper() + word[1:] for word in words)
    if joined[0].isdigit():
        joined = f"{fallback}{joined}"
    return joined


def default_test_pattern(module: str, step_ordinal: int, step_name: str) -> str:
    """Test-suite name used to filter a step's tests when none is recorded.

    Generated suites are named ``<Module>Step<N><Name>`` so that a step's
    tests can be selected without running the rest of the module's suite.
    """
    return f"{camel_case(module)}Step{step_ordinal}{camel_case(step_name, fallback='')}"


def fixture_basename(step_ordinal: int, name: str) -> str:
    return f"step{step_ordinal}_{slugify(name, fallback='fixture').replace('-', '_').replace('.', '_')}"


__all__ = ["camel_case", "default_test_pattern", "fixture_basename", "slugify"]
