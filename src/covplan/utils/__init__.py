"""Shared utility helpers."""

from .fs import atomic_write_json, atomic_write_text, atomic_write_yaml
from .slug import camel_case, default_test_pattern, fixture_basename, slugify

__all__ = [
    "atomic_write_json",
    "atomic_write_text",
    "atomic_write_yaml",
    "camel_case",
    "default_test_pattern",
    "fixture_basename",
    "slugify",
]
