from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def process_batches(
    items: Sequence[T],
    batch_size: int,
    fn: Callable[[T], R],
    delay_s: float = 0.2,
    max_workers: int | None = None,
    label: str = "items",
) -> list[R]:
    """Run ``fn`` over ``items`` one fixed-size chunk at a time.

    Items inside a chunk overlap their network calls on a pool capped at
    ``max_workers``; chunks run strictly one after another with ``delay_s``
    between them. Results come back in input order. ``fn`` is expected to
    handle its own per-item failures; anything it raises propagates.
    """
    results: list[R] = []
    total = len(items)
    if total == 0:
        return results
    workers = max(1, min(batch_size, max_workers or batch_size))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for index, batch in enumerate(chunked(items, batch_size)):
            results.extend(pool.map(fn, batch))
            done = len(results)
            if done < total and delay_s > 0:
                time.sleep(delay_s)
            if (index + 1) % 10 == 0 or done == total:
                logger.info("Progress %s: %d/%d (%.1f%%)", label, done, total, done / total * 100)
    return results
