"""Utility helpers for the Animify backend."""

from .helpers import (
    dedupe,
    get_content_type_for_extension,
    get_content_type_for_key,
    get_extension_for_content_type,
    is_valid_job_id,
    log_db_continue,
    log_event,
    short_id,
)
from .error_handlers import (
    AppError,
    ConflictError,
    IntegrityViolationError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

__all__ = [
    "dedupe",
    "get_content_type_for_extension",
    "get_content_type_for_key",
    "get_extension_for_content_type",
    "is_valid_job_id",
    "log_db_continue",
    "log_event",
    "short_id",
    "AppError",
    "ConflictError",
    "IntegrityViolationError",
    "NotFoundError",
    "UpstreamError",
    "ValidationError",
]
