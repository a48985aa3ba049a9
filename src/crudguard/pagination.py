"""
Pagination helpers for list endpoints.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Sequence

DEFAULT_PAGE = 1
DEFAULT_PER_PAGE = 10
MAX_PER_PAGE = 100
MAX_PAGE = 2 ** 31 - 1


@dataclass(frozen=True)
class PageRequest:
    page: int = DEFAULT_PAGE
    per_page: int = DEFAULT_PER_PAGE
    sort: str = "id"
    order: str = "asc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


@dataclass(frozen=True)
class Pagination:
    """
    Response metadata for one page.

    Attributes:
        page: 1-based page number
        per_page: Page size
        total: Total matching items
        total_pages: ceil(total / per_page)
        has_next: Another page follows
        has_prev: A page precedes
        sort: Sort column
        order: "asc" or "desc"
    """
    page: int
    per_page: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool
    sort: str
    order: str

    @classmethod
    def build(cls, request: PageRequest, total: int) -> "Pagination":
        total_pages = math.ceil(total / request.per_page) if total else 0
        return cls(
            page=request.page,
            per_page=request.per_page,
            total=total,
            total_pages=total_pages,
            has_next=request.page < total_pages,
            has_prev=request.page > 1,
            sort=request.sort,
            order=request.order,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_pagination(query: Mapping[str, str], sortable: Sequence[str] = ("id",)) -> PageRequest:
    """
    Read ``page``, ``per_page``, ``sort`` and ``order`` from a query string.

    Out-of-range or unknown values fall back to the defaults.
    """
    page = _bounded_int(query.get("page"), DEFAULT_PAGE, MAX_PAGE)
    per_page = _bounded_int(query.get("per_page"), DEFAULT_PER_PAGE, MAX_PER_PAGE)

    sort = query.get("sort") or "id"
    if sort not in sortable:
        sort = "id"

    order = query.get("order") or "asc"
    if order not in ("asc", "desc"):
        order = "asc"

    return PageRequest(page=page, per_page=per_page, sort=sort, order=order)


def _bounded_int(raw, default: int, upper: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if 0 < value <= upper else default
