import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.datastructures import Headers

from app.core.config import Settings
from app.core.errors import error_response
from app.core.request_context import reset_request_id, set_request_id

logger = logging.getLogger("moveops")

REQUEST_ID_HEADER = "X-Request-Id"

CORS_ALLOW_HEADERS = ["Content-Type", "X-CSRF-Token", "X-Request-Id", "Idempotency-Key"]
CORS_ALLOW_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CORS_EXPOSE_HEADERS = ["X-Request-Id", "Content-Disposition"]
CORS_MAX_AGE = 600

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=(), usb=()",
    "Content-Security-Policy": "default-src 'none'; base-uri 'none'; frame-ancestors 'none'; form-action 'none'",
}
HSTS_VALUE = "max-age=31536000; includeSubDomains"

IMPORT_UPLOAD_PATHS = ("/imports/dry-run", "/imports/apply")


class PreflightCORSMiddleware(CORSMiddleware):
    """Starlette CORS with accepted preflights answered as 204 No Content."""

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers=request_headers)
        if response.status_code != 200:
            return response
        headers = {
            name: value
            for name, value in response.headers.items()
            if name.lower() not in ("content-length", "content-type")
        }
        return Response(status_code=204, headers=headers)


class BodyLimitMiddleware:
    """Caps request bodies per path.

    A declared ``Content-Length`` over the cap is refused before the route
    runs. Bodies without one are counted while streaming and fail the read
    with 413 once they cross the cap.
    """

    def __init__(self, app, default_limit: int, overrides: dict[str, int] | None = None) -> None:
        self.app = app
        self.default_limit = default_limit
        self.overrides = overrides or {}

    def limit_for(self, path: str) -> int:
        for suffix, limit in self.overrides.items():
            if path == suffix or path == "/api" + suffix:
                return limit
        return self.default_limit

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = self.limit_for(scope.get("path", ""))
        for name, value in scope.get("headers", []):
            if name == b"content-length":
                try:
                    declared = int(value)
                except ValueError:
                    declared = 0
                if declared > limit:
                    response = error_response(413, "payload_too_large", "Request body too large")
                    await response(scope, receive, send)
                    return

        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise HTTPException(status_code=413, detail="Request body too large")
            return message

        await self.app(scope, limited_receive, send)


def register_middleware(app: FastAPI, settings: Settings) -> None:
    """Wire the request pipeline.

    Each middleware registration wraps the ones registered before it, so the
    registration order below is innermost first. Effective order on the way
    in: request-id, CORS, security headers, logging, body limit.
    """

    app.add_middleware(
        BodyLimitMiddleware,
        default_limit=settings.max_body_bytes,
        overrides={path: settings.import_max_file_bytes for path in IMPORT_UPLOAD_PATHS},
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "request method=%s path=%s status=%s duration_ms=%.2f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            getattr(request.state, "request_id", ""),
        )
        return response

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = HSTS_VALUE
        return response

    app.add_middleware(
        PreflightCORSMiddleware,
        allow_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
        expose_headers=CORS_EXPOSE_HEADERS,
        max_age=CORS_MAX_AGE,
    )

    @app.middleware("http")
    async def request_id(request: Request, call_next):
        value = request.headers.get(REQUEST_ID_HEADER, "").strip() or str(uuid.uuid4())
        request.state.request_id = value
        token = set_request_id(value)
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "unhandled error method=%s path=%s request_id=%s",
                    request.method,
                    request.url.path,
                    value,
                )
                response = error_response(500, "internal_error", "Internal server error", request_id=value)
        finally:
            reset_request_id(token)
        response.headers[REQUEST_ID_HEADER] = value
        return response
