"""Explicit result types for expected lookup outcomes.

Repository lookups return ``Found | NotFound`` and duplicate-file checks return
``NewFile | DuplicateFile`` so callers branch on the outcome with ``match``
instead of catching exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass

from media_catalog.domain.models import Message


@dataclass(frozen=True, slots=True)
class Found:
    message: Message


@dataclass(frozen=True, slots=True)
class NotFound:
    key: str


@dataclass(frozen=True, slots=True)
class NewFile:
    file_unique_id: str


@dataclass(frozen=True, slots=True)
class DuplicateFile:
    """An earlier message already stores the same file."""

    original: Message


MessageLookup = Found | NotFound
FileCheck = NewFile | DuplicateFile

__all__ = [
    "DuplicateFile",
    "FileCheck",
    "Found",
    "MessageLookup",
    "NewFile",
    "NotFound",
]
