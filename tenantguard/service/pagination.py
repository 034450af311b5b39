from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, List, TypeVar

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    page: int = 1
    limit: int = 0
    total_items: int = 0
    total_pages: int = 0

    @classmethod
    def build(cls, items: List[T], page: int, limit: int, total_items: int) -> "Page[T]":
        """Page metadata; ``limit`` 0 means unpaged, reported as the item count."""

        if limit > 0 and total_items > 0:
            total_pages = (total_items + limit - 1) // limit
        elif total_items > 0:
            total_pages = 1
        else:
            total_pages = 0
        return cls(
            items=items,
            page=page if page > 0 else 1,
            limit=limit if limit > 0 else len(items),
            total_items=total_items,
            total_pages=total_pages,
        )


__all__ = ["Page"]
