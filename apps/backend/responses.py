from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from fastapi.responses import JSONResponse

from http_errors import HttpError


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_body(data: Any = None, message: str | None = None, status_code: int = 200) -> dict[str, Any]:
    return {"success": True, "data": data, "message": message, "timestamp": now_iso(), "statusCode": status_code}


def paginated(items: list[Any], page: int, limit: int, total: int, message: str | None = None) -> dict[str, Any]:
    total_pages = max(1, math.ceil(total / limit)) if limit > 0 else 1
    body = success_body(items, message)
    body["pagination"] = {"page": page, "limit": limit, "total": total, "totalPages": total_pages, "hasNext": page < total_pages, "hasPrev": page > 1}
    return body


def cached(data: Any, hit: bool, ttl: int | None = None, key: str | None = None) -> dict[str, Any]:
    body = success_body(data)
    body["cache"] = {"hit": hit, "ttl": ttl, "key": key}
    return body


def error_body(error: HttpError) -> dict[str, Any]:
    return {
        "success": False,
        "error": error.user_message,
        "message": error.message,
        "statusCode": error.status_code,
        "timestamp": now_iso(),
        "details": error.details,
    }


def error_response(error: HttpError) -> JSONResponse:
    response = JSONResponse(error_body(error), status_code=error.status_code)
    retry_after = getattr(error, "retry_after", None)
    if error.status_code == 429 and retry_after:
        response.headers["Retry-After"] = str(retry_after)
    return response
