from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence


@dataclass(frozen=True)
class Pagination:
    current: int
    per_page: int
    total: int

    @classmethod
    def for_request(cls, page: Any, per_page: Any, total: int) -> 'Pagination':
        try:
            page = max(int(page or 1), 1)
        except (TypeError, ValueError):
            page = 1
        try:
            per_page = max(int(per_page or 1), 1)
        except (TypeError, ValueError):
            per_page = 1
        return cls(current=page, per_page=per_page, total=max(int(total), 0))

    @property
    def total_pages(self) -> int:
        return max(math.ceil(self.total / self.per_page), 1)

    @property
    def offset(self) -> int:
        return (self.current - 1) * self.per_page

    @property
    def has_more(self) -> bool:
        return self.current < self.total_pages

    def slice(self, items: Sequence[Any]) -> List[Any]:
        return list(items[self.offset:self.offset + self.per_page])

    def to_dict(self) -> Dict[str, int]:
        return {
            'current': self.current,
            'previous': self.current - 1 if self.current > 1 else 0,
            'next': self.current + 1 if self.has_more else 0,
            'perPage': self.per_page,
            'totalPage': self.total_pages,
            'totalItem': self.total,
        }


def paginate_list(items: Sequence[Any], page: Any, per_page: Any):
    """Slice an in-memory list; returns ``(page_items, Pagination)``."""
    p = Pagination.for_request(page, per_page, len(items))
    return p.slice(items), p


__all__ = ['Pagination', 'paginate_list']
