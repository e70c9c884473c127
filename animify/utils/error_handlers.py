"""
HTTP Error Handlers
-------------------
Error taxonomy shared by services and routes, plus the Flask handlers that
render it as JSON.

Every error carries an ``action`` hint for the client:
- retry_later: the same request may succeed later (conflict, upstream outage)
- fix_input: the request itself is wrong (bad id, missing job)
- contact_support: something that should never happen did (payment mismatch)

Usage:
    from animify.utils.error_handlers import register_error_handlers
    register_error_handlers(app)
"""

from __future__ import annotations

from typing import Any

from flask import jsonify
from werkzeug.exceptions import HTTPException

ACTION_RETRY_LATER = "retry_later"
ACTION_FIX_INPUT = "fix_input"
ACTION_CONTACT_SUPPORT = "contact_support"


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    code = "INTERNAL_ERROR"
    action = ACTION_RETRY_LATER

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        error = {"code": self.code, "message": self.message, "action": self.action}
        if self.details:
            error["details"] = self.details
        return error


class NotFoundError(AppError):
    """Job, input blob or output blob does not exist."""
    status_code = 404
    code = "NOT_FOUND"
    action = ACTION_FIX_INPUT


class ConflictError(AppError):
    """Another attempt holds the job."""
    status_code = 409
    code = "CONFLICT"
    action = ACTION_RETRY_LATER


class UpstreamError(AppError):
    """Transformation, storage, identity provider or payment processor failed."""
    status_code = 500
    code = "UPSTREAM_FAILURE"
    action = ACTION_RETRY_LATER


class ValidationError(AppError):
    """Malformed request: bad ids, missing fields, unprocessed job."""
    status_code = 400
    code = "VALIDATION_ERROR"
    action = ACTION_FIX_INPUT


class IntegrityViolationError(AppError):
    """Charge or ownership check failed. Always logged by the raiser."""
    status_code = 400
    code = "INTEGRITY_VIOLATION"
    action = ACTION_CONTACT_SUPPORT


def make_error_response(
    code: str,
    message: str,
    status: int,
    action: str | None = None,
    details: dict[str, Any] | None = None,
):
    """Build the standard ``{"ok": false, "error": {...}}`` response tuple."""
    error: dict[str, Any] = {"code": code, "message": message}
    if action:
        error["action"] = action
    if details:
        error["details"] = details
    return jsonify({"ok": False, "error": error}), status


def error_response(err: AppError):
    """Render an AppError as a response tuple."""
    return jsonify({"ok": False, "error": err.to_dict()}), err.status_code


def register_error_handlers(app) -> None:
    """Attach JSON handlers for the taxonomy, database errors and HTTP errors."""
    from animify.db import DatabaseError

    @app.errorhandler(AppError)
    def handle_app_error(e: AppError):
        return error_response(e)

    @app.errorhandler(DatabaseError)
    def handle_database_error(e: DatabaseError):
        print(f"[ERROR] Database error: {e}")
        return make_error_response(
            "DATABASE_ERROR", "Database error occurred", 500, ACTION_RETRY_LATER
        )

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        code = (e.name or "HTTP_ERROR").upper().replace(" ", "_")
        action = ACTION_RETRY_LATER if (e.code or 500) >= 500 else ACTION_FIX_INPUT
        return make_error_response(code, e.description or e.name, e.code or 500, action)

    @app.errorhandler(Exception)
    def handle_internal_error(e: Exception):
        print(f"[ERROR] Unhandled {type(e).__name__}: {e}")
        return make_error_response(
            "INTERNAL_ERROR", "Internal server error", 500, ACTION_RETRY_LATER
        )
