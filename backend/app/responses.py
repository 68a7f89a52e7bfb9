"""
Keystone Backend — Response Envelope Helpers
============================================

What:  Builders for the success envelope `{"success": true, "data", "meta"?}`.
Why:   Route handlers return the same shape everywhere; `meta` is omitted
       (not null) when there is nothing to say.
"""

import math
from typing import Any, Dict, Optional

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def page_meta(total: int, page: int, limit: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def success(
    data: Any = None,
    meta: Optional[Dict[str, Any]] = None,
    status_code: int = status.HTTP_200_OK,
) -> JSONResponse:
    body: Dict[str, Any] = {"success": True, "data": data}
    if meta:
        body["meta"] = meta
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body, by_alias=True))


def created(data: Any, message: Optional[str] = None) -> JSONResponse:
    return success(data, meta={"message": message} if message else None, status_code=status.HTTP_201_CREATED)


def paginated(data: Any, total: int, page: int, limit: int) -> JSONResponse:
    return success(data, meta=page_meta(total, page, limit))


def message(text: str, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return success({"message": text}, status_code=status_code)
