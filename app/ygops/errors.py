"""
Application error types and their JSON rendering.

Services raise these; the handlers registered by `register_error_handlers`
turn them into `{"error": {"code", "message", "details"}}` responses.
"""
from __future__ import annotations

from typing import Any

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException


class AppError(Exception):
    status = 400
    code = "BAD_REQUEST"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status:
            self.status = status
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    status = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status = 401
    code = "UNAUTHENTICATED"


class ForbiddenError(AppError):
    status = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status = 409
    code = "CONFLICT"


class RateLimitError(AppError):
    status = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))
        self.details.setdefault("retry_after", self.retry_after)


class ServiceUnavailableError(AppError):
    status = 503
    code = "SERVICE_UNAVAILABLE"


def error_response(code: str, message: str, status: int, details: dict[str, Any] | None = None):
    body: dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    return jsonify({"error": body}), status


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def _app_error(e: AppError):  # type: ignore[no-redef]
        if e.status >= 500:
            app.logger.error("%s: %s (request_id=%s)", e.code, e.message, getattr(g, "request_id", None))
        resp, status = error_response(e.code, e.message, e.status, e.details)
        if isinstance(e, RateLimitError) and e.retry_after:
            resp.headers["Retry-After"] = str(e.retry_after)
        return resp, status

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        details = {"missing_permission": missing} if missing else None
        return error_response("FORBIDDEN", "You do not have permission to perform this action.", 403, details)

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit = app.config.get("MAX_CONTENT_LENGTH") or 0
        return error_response("PAYLOAD_TOO_LARGE", "File too large.", 413, {"max_bytes": limit})

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        code = (e.name or "error").upper().replace(" ", "_")
        return error_response(code, e.description or e.name, e.code or 500)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return error_response("INTERNAL_ERROR", "Internal server error.", 500)
