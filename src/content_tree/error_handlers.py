"""Unified error responses for the HTTP adapter.

- Every error renders as ErrorResponse: {error, message, request_id, details}.
- TreeError kinds map to status codes here; the core never sees HTTP.
"""

from __future__ import annotations

import logging
from typing import cast

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from content_tree.errors import TreeError
from content_tree.schemas import ErrorResponse

logger = logging.getLogger(__name__)


_KIND_TO_STATUS: dict[str, int] = {
    "not_found": 404,
    "cycle_detected": 400,
    "constraint_violation": 400,
    "duplicate_code": 400,
    "not_a_sibling": 400,
    "has_children": 400,
    "version_conflict": 409,
    "storage_unavailable": 503,
}


def status_for_kind(kind: str) -> int:
    # Path integrity kinds are data bugs: 500.
    return _KIND_TO_STATUS.get(kind, 500)


def _map_http_status_to_error(status_code: int) -> str:
    mapping: dict[int, str] = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


async def _tree_error_handler(request: Request, exc: Exception) -> JSONResponse:
    tree_exc = cast(TreeError, exc)
    status_code = status_for_kind(tree_exc.kind)
    request_id = getattr(request.state, "request_id", None)

    if tree_exc.fatal:
        logger.exception(
            "path integrity violation request_id=%s method=%s path=%s kind=%s",
            request_id,
            request.method,
            request.url.path,
            tree_exc.kind,
            exc_info=exc,
        )
    elif status_code >= 500:
        logger.warning(
            "tree storage failure request_id=%s kind=%s message=%s",
            request_id,
            tree_exc.kind,
            tree_exc.message,
        )

    payload = ErrorResponse(
        error=tree_exc.kind,
        message=tree_exc.message,
        request_id=request_id,
        details=tree_exc.details or None,
    )
    headers = {"Retry-After": "1"} if tree_exc.retryable and status_code == 503 else None
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(payload, exclude_none=True),
        headers=headers,
    )


async def _http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_exc = cast(StarletteHTTPException, exc)

    details: object | None = None
    message = str(http_exc.detail)
    if isinstance(http_exc.detail, dict):
        # Convention: {'message': str, 'details': object}
        msg = http_exc.detail.get("message")
        if isinstance(msg, str):
            message = msg
            details = http_exc.detail.get("details")
        else:
            details = http_exc.detail

    payload = ErrorResponse(
        error=_map_http_status_to_error(http_exc.status_code),
        message=message,
        request_id=getattr(request.state, "request_id", None),
        details=details,
    )
    return JSONResponse(
        status_code=http_exc.status_code,
        content=jsonable_encoder(payload, exclude_none=True),
        headers=getattr(http_exc, "headers", None),
    )


async def _validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    validation_exc = cast(RequestValidationError, exc)
    payload = ErrorResponse(
        error="validation_error",
        message="Request validation error",
        request_id=getattr(request.state, "request_id", None),
        # errors() may carry exception objects in ctx.
        details=jsonable_encoder(validation_exc.errors()),
    )
    return JSONResponse(status_code=422, content=jsonable_encoder(payload, exclude_none=True))


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.exception(
        "unhandled exception request_id=%s method=%s path=%s",
        request_id,
        request.method,
        request.url.path,
        exc_info=exc,
    )
    payload = ErrorResponse(
        error="internal_error",
        message="Internal server error",
        request_id=request_id,
    )
    return JSONResponse(status_code=500, content=jsonable_encoder(payload, exclude_none=True))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TreeError, _tree_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
