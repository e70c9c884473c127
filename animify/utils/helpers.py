"""
Small stateless helpers shared by services and routes: job id rules,
MIME/extension mapping and secret-safe event logging.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

# Opaque client-generated ids. No dots: keys are built as "{job_id}.{ext}".
JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

_EXT_BY_CONTENT_TYPE = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}

_CONTENT_TYPE_BY_EXT = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def is_valid_job_id(value: Any) -> bool:
    """True when value is a string usable as a job id and storage key stem."""
    return isinstance(value, str) and bool(JOB_ID_PATTERN.match(value))


def get_extension_for_content_type(content_type: str) -> str:
    """Extension with a leading dot for an image MIME type, or "" when unknown."""
    base = (content_type or "").split(";", 1)[0].strip().lower()
    return _EXT_BY_CONTENT_TYPE.get(base, "")


def get_content_type_for_extension(ext: str) -> str:
    """MIME type for an extension, with or without the leading dot."""
    ext = (ext or "").lower()
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return _CONTENT_TYPE_BY_EXT.get(ext, "application/octet-stream")


def get_content_type_for_key(key: str) -> str:
    """Infer MIME type from a storage key's extension."""
    return get_content_type_for_extension(os.path.splitext(key or "")[1])


def dedupe(values: list) -> list:
    """Remove duplicates while preserving order."""
    seen = set()
    unique = []
    for value in values:
        if value not in seen:
            seen.add(value)
            unique.append(value)
    return unique


def short_id(value: str | None, length: int = 8) -> str:
    """Truncate an id for log lines."""
    if not value:
        return "None"
    return f"{value[:length]}..." if len(value) > length else value


_logger = logging.getLogger("animify.helpers")

_SECRET_MARKERS = ("key", "token", "secret", "auth", "password")
_PRESERVED_KEYS = {"input_key", "output_key", "preview_key"}


def _truncate_json(value: Any, limit: int = 400) -> str:
    try:
        text = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = repr(value)
    return text if len(text) <= limit else text[:limit] + "…"


def _scrub_secrets(data: Any) -> Any:
    """Replace values of secret-looking keys with '***', recursively. Storage keys are kept."""
    if isinstance(data, dict):
        return {
            k: "***"
            if str(k).lower() not in _PRESERVED_KEYS and any(m in str(k).lower() for m in _SECRET_MARKERS)
            else _scrub_secrets(v)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [_scrub_secrets(item) for item in data]
    return data


def log_event(event_name: str, data: dict) -> None:
    """Structured one-line event on the animify logger, with secrets masked."""
    try:
        _logger.info("[event] %s :: %s", event_name, _truncate_json(_scrub_secrets(data)))
    except Exception as e:
        _logger.warning("[event] %s :: not logged (%s)", event_name, e)


def log_db_continue(op: str, err: Exception) -> None:
    """Record a database failure the caller has decided to carry on past."""
    _logger.warning("[DB] %s failed, continuing: %s: %s", op, type(err).__name__, err)
