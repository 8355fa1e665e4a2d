from __future__ import annotations

import logging

from .schemas import CourseContent, MediaCounts, StoredMediaItem
from .walker import count_tree_references

logger = logging.getLogger(__name__)


def total_media_count(tree_reference_count: int, store_item_count: int) -> int:
    # The tree can under-reference what the store holds, so take the larger.
    return max(tree_reference_count, store_item_count)


def reconcile_counts(total: int, binary_files: int) -> MediaCounts:
    """Split ``total`` into binary files and embedded references.

    ``binary_files`` is the loader's actual yield. Should it ever exceed the
    estimated total, the total is raised to match so the two parts still sum.
    """
    if binary_files > total:
        logger.warning("Loaded %d binary files but estimated only %d media", binary_files, total)
        total = binary_files
    return MediaCounts(
        binary_files=binary_files,
        embedded_references=total - binary_files,
        total_media_count=total,
    )


def estimate_counts(course: CourseContent, store_items: list[StoredMediaItem]) -> MediaCounts:
    """Pre-generation counts, before anything has been loaded."""
    total = total_media_count(count_tree_references(course), len(store_items))
    binary_candidates = sum(1 for item in store_items if not item.is_reference_only)
    return reconcile_counts(total, min(binary_candidates, total))


def missing_media_warning(failure_count: int) -> str:
    return f"Package generated with {failure_count} missing media files"
