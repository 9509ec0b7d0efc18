"""
Utility functions for file system operations, string sanitization and
asset placement.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem and storage keys
- Ensuring directory creation
- Spreading images evenly across a book's body chapters
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Guide: Lisbon!", "guide")
        "my-guide-lisbon"
        >>> sanitize_label("@#$", "guide")
        "guide"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def sanitize_filename(filename: str, fallback_stem: str = "file") -> str:
    """Keep the extension of an uploaded file and sanitize its stem."""
    path = Path(filename)
    stem = sanitize_label(path.stem, fallback=fallback_stem)
    return f"{stem}{path.suffix.lower()}"


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


def remove_staged_upload(path: Path, staging_root: Path) -> bool:
    """
    Delete an upload staged under ``staging_root``.

    Each upload is staged in its own directory, which is removed with it.
    Paths outside ``staging_root`` are left alone.

    Returns:
        True if something was deleted
    """
    root = staging_root.resolve()
    target = path.resolve()
    if root not in target.parents:
        return False
    if target.parent != root:
        target = target.parent
    if not target.exists():
        return False
    if target.is_dir():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True


def body_chapter_numbers(chapter_orders: Sequence[int]) -> List[int]:
    """
    Chapters that may receive images.

    The first and last chapters (introduction and closing) are left without
    images unless the book is too short to have a body.
    """
    ordered = sorted(chapter_orders)
    if len(ordered) > 2:
        return ordered[1:-1]
    return ordered


def distribute_chapter_numbers(count: int, slots: Sequence[int]) -> List[Optional[int]]:
    """
    Spread ``count`` items evenly over ``slots``.

    Item ``i`` goes to ``slots[floor(i / count * len(slots))]``, with the
    index clamped to the valid range.

    Args:
        count: Number of items to place
        slots: Candidate chapter numbers, in reading order

    Returns:
        One chapter number per item; ``None`` for every item when there are no slots

    Example:
        >>> distribute_chapter_numbers(3, [2, 3, 4, 5, 6, 7])
        [2, 4, 6]
    """
    if not slots:
        return [None] * count
    placements: List[Optional[int]] = []
    for index in range(count):
        slot_index = int(index / count * len(slots))
        slot_index = max(0, min(slot_index, len(slots) - 1))
        placements.append(slots[slot_index])
    return placements
