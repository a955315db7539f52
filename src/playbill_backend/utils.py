"""
Utility functions for filename sanitization and identifier checks.

This module provides helper functions for:
- Sanitizing client-supplied filenames before they reach S3 metadata
- Ensuring directory creation for the local SQLite databases
- Validating identifiers supplied in paths and form fields
"""

from __future__ import annotations

import re
from pathlib import Path
from uuid import UUID

# Characters that are not safe in object metadata or logs
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


def sanitize_filename(filename: str, fallback: str = "upload") -> str:
    """
    Reduce a client-supplied filename to a safe, lowercase ASCII name.

    Any directory components are dropped, unsafe characters become underscores
    and runs of underscores are collapsed.

    Args:
        filename: The original (untrusted) filename
        fallback: Value returned when nothing usable is left

    Returns:
        A filesystem- and header-safe filename

    Example:
        >>> sanitize_filename("photos/Les Misérables.JPG")
        "les_mis_rables.jpg"
    """
    name = re.sub(r"^.*[\\/]", "", filename or "")
    cleaned = SANITIZE_PATTERN.sub("_", name)
    cleaned = _REPEATED_UNDERSCORES.sub("_", cleaned).lower()
    return cleaned.strip("_") or fallback


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


def is_valid_uuid(value: str | None) -> bool:
    """Return True when ``value`` is a canonical UUID string."""
    if not value:
        return False
    try:
        return str(UUID(value)) == value.lower()
    except (ValueError, AttributeError, TypeError):
        return False


def canonical_uuid(value: str) -> str:
    """
    Normalise a UUID string to its lowercase hyphenated form.

    Callers validate with ``is_valid_uuid`` first; ids are stored and
    compared in this form only.
    """
    return str(UUID(value))
