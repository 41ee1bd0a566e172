"""
Utility functions for file naming and filesystem operations.

This module provides helper functions for:
- Generating collision-free storage names for stored files
- Deriving display names for transformation outputs
- Ensuring directory creation with proper error handling
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from pathlib import Path

# Alphabet for the random storage-name suffix (URL and filesystem safe)
SUFFIX_ALPHABET = string.ascii_letters + string.digits + "_-"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def epoch_millis() -> int:
    """Milliseconds since the epoch, used as a filename marker."""
    return time.time_ns() // 1_000_000


def random_suffix(length: int = 6) -> str:
    """
    Generate a short random token for storage names.

    Args:
        length: Number of characters to generate

    Returns:
        A random string drawn from letters, digits, '_' and '-'
    """
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


def make_storage_name(display_name: str) -> str:
    """
    Build an internal storage name for a new file.

    The name combines a millisecond timestamp with a random suffix and keeps
    the extension of the user-facing name, so two uploads of the same file
    never collide.

    Args:
        display_name: The user-facing filename

    Returns:
        A name such as "1718900000000-Ab3_xZ.pdf"

    Example:
        >>> make_storage_name("report.PDF")  # doctest: +SKIP
        "1718900000000-Ab3_xZ.PDF"
    """
    _, extension = split_extension(display_name)
    return f"{epoch_millis()}-{random_suffix()}{extension}"


def strip_pdf_suffix(filename: str) -> str:
    """
    Remove a trailing ".pdf" from a filename.

    Example:
        >>> strip_pdf_suffix("report.pdf")
        "report"
        >>> strip_pdf_suffix("notes.txt")
        "notes.txt"
    """
    return filename.removesuffix(".pdf")


def ensure_pdf_extension(filename: str) -> str:
    """
    Append ".pdf" to a filename that does not already end with it.

    The check is case-insensitive, so "Combo.PDF" is kept as is.
    """
    if not filename.lower().endswith(".pdf"):
        return f"{filename}.pdf"
    return filename


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    This is a safe idempotent operation that won't fail if the directory
    already exists.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Args:
        filename: The filename to split (can include path)

    Returns:
        A tuple of (stem, extension) where extension includes the dot

    Example:
        >>> split_extension("document.pdf")
        ("document", ".pdf")
        >>> split_extension("/path/to/file.tar.gz")
        ("file.tar", ".gz")
    """
    path = Path(filename)
    return path.stem, path.suffix
