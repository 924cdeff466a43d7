from __future__ import annotations

from typing import Any, Callable, Iterable, TypeVar

T = TypeVar("T")


def ranked(
    items: Iterable[T],
    key: Callable[[T], Any],
    tie_breaker: Callable[[T], Any],
    limit: int | None = None,
) -> list[T]:
    """Highest ``key`` first; equal keys keep ascending ``tie_breaker`` order."""
    ordered = sorted(sorted(items, key=tie_breaker), key=key, reverse=True)
    return ordered if limit is None else ordered[:limit]
