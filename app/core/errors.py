"""Uniform JSON error envelope.

Every failure leaves the API as::

    {"error": {"code": ..., "message": ..., "details": ...}, "requestId": ...}

``details`` is omitted when empty.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.request_context import get_request_id


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


def bad_request(code: str, message: str, details: dict[str, Any] | None = None) -> ApiError:
    return ApiError(400, code, message, details)


def validation_error(message: str, details: dict[str, Any] | None = None) -> ApiError:
    return ApiError(400, "validation_error", message, details)


def not_found(code: str, message: str) -> ApiError:
    return ApiError(404, code, message)


def conflict(code: str, message: str, details: dict[str, Any] | None = None) -> ApiError:
    return ApiError(409, code, message, details)


def request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id()


def error_body(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"code": code, "message": message}
    if details:
        payload["details"] = details
    return {"error": payload, "requestId": request_id or get_request_id()}


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(code, message, details, request_id),
        headers=headers,
    )


def _describe_validation(exc: RequestValidationError) -> tuple[str, str, dict[str, Any] | None]:
    errors = exc.errors()
    if not errors:
        return "validation_error", "Request validation failed", None
    first = errors[0]
    if first.get("type") == "json_invalid":
        return "invalid_body", "Malformed JSON body", None
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Request validation failed")
    if location:
        return "validation_error", f"{location}: {message}", {"field": location}
    return "validation_error", message, None


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        exc.status_code, exc.code, exc.message, exc.details, request_id_for(request)
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    code, message, details = _describe_validation(exc)
    return error_response(400, code, message, details, request_id_for(request))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    codes = {404: "not_found", 405: "method_not_allowed", 413: "payload_too_large"}
    code = codes.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 400 and request.headers.get("content-type", "").lower().startswith("multipart/"):
        code, message = "invalid_multipart", "Failed to parse multipart form"
    return error_response(
        exc.status_code,
        code,
        message,
        request_id=request_id_for(request),
        headers=getattr(exc, "headers", None),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
