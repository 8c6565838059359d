"""
Small helpers shared by the store, the blob adapters and the API layer.

This module provides helper functions for:
- Sanitizing uploaded file names into blob-safe keys
- Ensuring directory creation for local storage and the database file
- UTC timestamps and new record identifiers
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, TypeVar
from uuid import uuid4

# Pattern to match characters that are not safe for blob keys
# Allows: alphanumeric characters, dots and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9.-]")

T = TypeVar("T")


def sanitize_filename(filename: str, fallback: str = "file") -> str:
    """
    Generate a blob-key-safe file name from user input.

    Every character outside ``[a-zA-Z0-9.-]`` becomes an underscore, so the
    result can be embedded in a storage path without escaping.

    Args:
        filename: The original file name (a directory part is dropped)
        fallback: Value returned when nothing usable remains

    Returns:
        The sanitized name or the fallback value

    Example:
        >>> sanitize_filename("Home Jersey (v2).svg")
        "Home_Jersey__v2_.svg"
        >>> sanitize_filename("")
        "file"
    """
    name = Path(filename).name.strip()
    cleaned = SANITIZE_PATTERN.sub("_", name)
    if not cleaned.strip("._"):
        return fallback
    return cleaned


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


def unique(values: Iterable[T]) -> List[T]:
    """Drop repeated values while keeping first-seen order."""
    return list(dict.fromkeys(values))
