"""Shared utilities for the import pipeline."""

import logging
from collections.abc import Iterator, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def batch_items(
    items: Sequence[T], batch_size: int, description: str = "items", start: int = 0
) -> Iterator[tuple[int, int, Sequence[T]]]:
    """Yield fixed-size batches with batch metadata.

    Args:
        items: Items to batch.
        batch_size: Maximum items per batch.
        description: Label for logging (e.g., "cards").
        start: Index of the first item to include; earlier items are skipped
            but still counted in the batch numbering.

    Yields:
        Tuples of (batch_number, total_batches, batch).
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    total_batches = (len(items) + batch_size - 1) // batch_size
    first = (start // batch_size) * batch_size

    for i in range(first, len(items), batch_size):
        batch = items[i : i + batch_size]
        batch_num = i // batch_size + 1
        logger.debug(
            "Processing %s: batch %d/%d (%d items)",
            description,
            batch_num,
            total_batches,
            len(batch),
        )
        yield batch_num, total_batches, batch


def interpolate_progress(done: int, total: int, low: int, high: int) -> int:
    """Map ``done/total`` linearly onto ``[low, high]``; reaches ``high`` only when done."""
    if total <= 0 or done >= total:
        return high
    return low + (done * (high - low)) // total
