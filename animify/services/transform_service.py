"""
Transformation client for the OpenAI image edit endpoint.

One call = one restyled image. The input is normalized to PNG, sent with a
fully transparent mask and an output size matched to its aspect ratio.

Retries inside a call cover connection failures and 5xx responses only. A read
timeout is not retried: the upstream may already have rendered (and billed)
the image.
"""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError, Timeout

from animify.config import config
from animify.services import image_service
from animify.services.dimensions import determine_output_size
from animify.utils.error_handlers import UpstreamError, ValidationError

# Edits with gpt-image-1 regularly take 60-120s
OPENAI_TIMEOUT = (15, 240)  # (connect_timeout, read_timeout)
DOWNLOAD_TIMEOUT = (10, 60)
MAX_RETRIES = 3
BASE_RETRY_DELAY = 2  # seconds (exponential backoff: 2s, 4s)

MAX_INPUT_BYTES = 20 * 1024 * 1024
SUPPORTED_INPUT_TYPES = ("image/png", "image/jpeg", "image/jpg", "image/webp", "image/gif")
# Longest side used when a normalized PNG is over the upload limit
OVERSIZE_MAX_DIMENSION = 2048


class TransformError(UpstreamError):
    """Image edit failed (4xx, exhausted retries, unusable response)."""
    code = "TRANSFORM_FAILED"


class OpenAIServerError(Exception):
    """Raised for 5xx errors from OpenAI (retryable)."""
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class TransformResult:
    data: bytes
    content_type: str
    size: str


def _prepare_input(image_bytes: bytes, content_type: str | None) -> tuple[bytes, int, int]:
    base_type = (content_type or "").split(";", 1)[0].strip().lower()
    if base_type and base_type not in SUPPORTED_INPUT_TYPES:
        raise ValidationError(f"Unsupported input type: {content_type}", code="UNSUPPORTED_IMAGE_TYPE")
    if len(image_bytes) > MAX_INPUT_BYTES:
        raise ValidationError("Input image exceeds 20MB", code="IMAGE_TOO_LARGE")

    png, width, height = image_service.normalize_to_png(image_bytes)
    if len(png) > MAX_INPUT_BYTES:
        png, width, height = image_service.normalize_to_png(image_bytes, OVERSIZE_MAX_DIMENSION)
        print(f"[OpenAI] Input re-encoded at {width}x{height} to stay under 20MB")
    return png, width, height


def _post_edit(files: dict, data: dict) -> dict:
    url = f"{config.OPENAI_API_BASE}/images/edits"
    headers = {"Authorization": f"Bearer {config.OPENAI_API_KEY}"}

    last_error = None
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            print(f"[OpenAI] Attempt {attempt}/{MAX_RETRIES}: image edit (timeout={OPENAI_TIMEOUT[1]}s)")
            r = requests.post(url, headers=headers, files=files, data=data, timeout=OPENAI_TIMEOUT)
            if not r.ok:
                if 400 <= r.status_code < 500:
                    raise TransformError(f"OpenAI edit -> {r.status_code}: {r.text[:500]}")
                raise OpenAIServerError(r.status_code, f"OpenAI server error {r.status_code}: {r.text[:200]}")
            try:
                return r.json()
            except ValueError as exc:
                raise TransformError(f"OpenAI edit returned non-JSON: {r.text[:200]}") from exc
        except (RequestsConnectionError, OpenAIServerError) as e:
            last_error = e
            if attempt < MAX_RETRIES:
                delay = BASE_RETRY_DELAY * (2 ** (attempt - 1))
                error_type = f"HTTP {e.status_code}" if isinstance(e, OpenAIServerError) else type(e).__name__
                print(f"[OpenAI] Attempt {attempt} failed ({error_type}), retrying in {delay}s...")
                time.sleep(delay)
        except Timeout as e:
            print(f"[OpenAI] Read timeout after {OPENAI_TIMEOUT[1]}s, not retrying")
            raise TransformError("OpenAI edit timed out") from e

    raise TransformError(f"OpenAI edit failed after {MAX_RETRIES} attempts: {last_error}")


def _decode_result(payload: dict) -> tuple[bytes, str]:
    items = payload.get("data") or []
    if not items:
        raise TransformError("OpenAI edit returned no images")
    item = items[0] or {}

    if item.get("b64_json"):
        try:
            return base64.b64decode(item["b64_json"]), "image/png"
        except (ValueError, TypeError) as e:
            raise TransformError("OpenAI edit returned invalid base64") from e

    if item.get("url"):
        try:
            r = requests.get(item["url"], timeout=DOWNLOAD_TIMEOUT)
        except requests.RequestException as e:
            raise TransformError(f"Failed to download edited image: {e}") from e
        content_type = (r.headers.get("Content-Type") or "").split(";", 1)[0].strip().lower()
        if not r.ok or not content_type.startswith("image/"):
            raise TransformError(f"Edited image download failed ({r.status_code}, {content_type or 'no type'})")
        return r.content, content_type

    raise TransformError("OpenAI edit returned neither b64_json nor url")


def transform_image(image_bytes: bytes, content_type: str | None = None) -> TransformResult:
    """Restyle one image. Raises ValidationError for bad input, TransformError otherwise."""
    if not config.OPENAI_API_KEY:
        raise TransformError("OPENAI_API_KEY not set")

    png, width, height = _prepare_input(image_bytes, content_type)
    decision = determine_output_size(width, height)
    mask = image_service.build_transparent_mask(width, height)

    files = {
        "image": ("image.png", png, "image/png"),
        "mask": ("mask.png", mask, "image/png"),
    }
    data = {
        "model": config.OPENAI_IMAGE_MODEL,
        "prompt": config.TRANSFORM_PROMPT,
        "n": "1",
        "size": decision.size,
    }

    started = time.time()
    payload = _post_edit(files, data)
    result_bytes, result_type = _decode_result(payload)
    print(f"[OpenAI] Edit finished in {time.time() - started:.1f}s ({len(result_bytes)} bytes, size={decision.size})")
    return TransformResult(data=result_bytes, content_type=result_type, size=decision.size)
