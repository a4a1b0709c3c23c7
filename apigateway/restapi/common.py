from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence

from fastapi import Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from apigateway.utils import isoformat_utc, utcnow

Record = Dict[str, Any]


def now_iso() -> str:
    return isoformat_utc(utcnow()) or ""


def ok(data: Any, *, status_code: int = 200, message: Optional[str] = None, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    body["data"] = data
    body.update(extra)
    body["timestamp"] = now_iso()
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@dataclass(frozen=True)
class PageParams:
    page: int
    limit: int
    sort: str
    sort_by: Optional[str]

    @property
    def descending(self) -> bool:
        return self.sort == "desc"


async def page_params(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort: Literal["asc", "desc"] = Query(default="asc"),
    sort_by: Optional[str] = Query(default=None, alias="sortBy"),
) -> PageParams:
    return PageParams(page=page, limit=limit, sort=sort, sort_by=sort_by)


def _sort_key(value: Any) -> tuple:
    # Missing values first, then numbers, then case-folded strings.
    if value is None:
        return (0, 0)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value.lower())
    return (3, str(value))


def sort_records(records: List[Record], field: str, *, descending: bool = False) -> List[Record]:
    return sorted(records, key=lambda record: _sort_key(record.get(field)), reverse=descending)


def paginate(records: Sequence[Record], params: PageParams) -> tuple[List[Record], Dict[str, Any]]:
    start = (params.page - 1) * params.limit
    end = start + params.limit
    total = len(records)
    return list(records[start:end]), {
        "currentPage": params.page,
        "totalPages": math.ceil(total / params.limit),
        "totalItems": total,
        "itemsPerPage": params.limit,
        "hasNextPage": end < total,
        "hasPrevPage": params.page > 1,
    }
