from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping

from lifeline.core.errors import ValidationError

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100
DEFAULT_SORT_BY = "id"
DEFAULT_SORT_ORDER = "ASC"


@dataclass(frozen=True)
class PaginationParams:
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    sort_by: str = DEFAULT_SORT_BY
    sort_order: str = DEFAULT_SORT_ORDER

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def _positive_int(value: object) -> int | None:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def normalize_pagination(
    raw: Mapping[str, object] | None,
    allowed_sort: set[str] | frozenset[str] | None = None,
    default_sort: str = DEFAULT_SORT_BY,
    default_order: str = DEFAULT_SORT_ORDER,
    default_limit: int = DEFAULT_LIMIT,
    max_limit: int = MAX_LIMIT,
) -> PaginationParams:
    """Turn raw query-string values into safe pagination parameters.

    Invalid or missing values fall back to the defaults instead of raising:
    page < 1 becomes 1, a limit outside 1..max_limit becomes ``default_limit``,
    an unknown sort column becomes ``default_sort``.
    """
    raw = raw or {}
    page = _positive_int(raw.get("page")) or DEFAULT_PAGE

    limit = _positive_int(raw.get("limit"))
    if limit is None or limit > max_limit:
        limit = default_limit

    sort_by = str(raw.get("sortBy") or raw.get("sort_by") or "").strip()
    if not sort_by or (allowed_sort is not None and sort_by not in allowed_sort):
        sort_by = default_sort

    sort_order = str(raw.get("sortOrder") or raw.get("order") or "").strip().upper()
    if sort_order not in {"ASC", "DESC"}:
        sort_order = default_order

    return PaginationParams(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)


def parse_id_filter(value: object, field_name: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"Identificador invalido en {field_name}") from exc


def pagination_meta(total: int, params: PaginationParams) -> dict[str, object]:
    total_pages = (total + params.limit - 1) // params.limit
    return {
        "page": params.page,
        "limit": params.limit,
        "total": total,
        "totalPages": total_pages,
        "hasNextPage": params.page < total_pages,
        "hasPreviousPage": params.page > 1,
    }


def paginate(query, model, params: PaginationParams, serialize: Callable[[object], dict]) -> dict[str, object]:
    column = getattr(model, params.sort_by, None)
    if column is None:
        column = getattr(model, DEFAULT_SORT_BY)
    ordering = column.desc() if params.sort_order == "DESC" else column.asc()
    total = query.order_by(None).count()
    rows = query.order_by(ordering).offset(params.offset).limit(params.limit).all()
    return {
        "data": [serialize(row) for row in rows],
        "meta": pagination_meta(total, params),
    }
