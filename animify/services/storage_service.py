"""
Storage gateway over three S3 buckets.

- input: user uploads, stored as ``{job_id}.{ext}``
- output: full-resolution results, ``{job_id}_out.{ext}`` (private, presigned on unlock)
- preview: locked previews, ``{job_id}.png`` (public)

Output and preview keys of the second and later processing attempts carry the
attempt number (``{job_id}_out.2.png``), so an attempt never writes over blobs
another attempt has committed.
"""

from __future__ import annotations

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from animify.config import config
from animify.utils import (
    get_content_type_for_key,
    get_extension_for_content_type,
)
from animify.utils.error_handlers import NotFoundError, UpstreamError

INPUT = "input"
OUTPUT = "output"
PREVIEW = "preview"

_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


class StorageError(UpstreamError):
    """Object storage call failed."""
    code = "STORAGE_ERROR"


class StorageNotFoundError(NotFoundError):
    """Requested object does not exist."""
    code = "BLOB_NOT_FOUND"


_s3 = boto3.client(
    "s3",
    region_name=config.AWS_REGION,
    endpoint_url=config.AWS_ENDPOINT_URL or None,
    aws_access_key_id=config.AWS_ACCESS_KEY_ID or None,
    aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY or None,
)


def bucket_for(kind: str) -> str:
    buckets = {
        INPUT: config.AWS_BUCKET_INPUT,
        OUTPUT: config.AWS_BUCKET_OUTPUT,
        PREVIEW: config.AWS_BUCKET_PREVIEW,
    }
    if kind not in buckets:
        raise ValueError(f"Unknown bucket kind: {kind}")
    return buckets[kind]


# ─────────────────────────────────────────────────────────────
# Key conventions
# ─────────────────────────────────────────────────────────────
def build_input_key(job_id: str, content_type: str) -> str:
    ext = get_extension_for_content_type(content_type) or ".png"
    return f"{job_id}{ext}"


def _attempt_suffix(attempt: int) -> str:
    # Job ids never contain dots, so ".{n}" cannot collide with another job's key
    return f".{attempt}" if attempt and attempt > 1 else ""


def build_output_key(job_id: str, content_type: str = "image/png", attempt: int = 1) -> str:
    """Output key for one processing attempt. Attempts never share keys."""
    ext = get_extension_for_content_type(content_type) or ".png"
    return f"{job_id}_out{_attempt_suffix(attempt)}{ext}"


def build_preview_key(job_id: str, attempt: int = 1) -> str:
    return f"{job_id}{_attempt_suffix(attempt)}.png"


def build_public_url(kind: str, key: str) -> str:
    bucket = bucket_for(kind)
    if config.AWS_ENDPOINT_URL:
        return f"{config.AWS_ENDPOINT_URL.rstrip('/')}/{bucket}/{key}"
    return f"https://{bucket}.s3.{config.AWS_REGION}.amazonaws.com/{key}"


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


# ─────────────────────────────────────────────────────────────
# Object operations
# ─────────────────────────────────────────────────────────────
def upload_bytes(kind: str, key: str, data: bytes, content_type: str) -> str:
    """Write an object and return its key."""
    bucket = bucket_for(kind)
    try:
        _s3.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
    except (ClientError, BotoCoreError) as e:
        print(f"[S3] Upload failed bucket={bucket} key={key}: {e}")
        raise StorageError(f"Failed to upload {key}") from e
    print(f"[S3] Uploaded {len(data)} bytes to {bucket}/{key}")
    return key


def download_bytes(kind: str, key: str) -> bytes:
    bucket = bucket_for(kind)
    try:
        obj = _s3.get_object(Bucket=bucket, Key=key)
        return obj["Body"].read()
    except ClientError as e:
        if _error_code(e) in _NOT_FOUND_CODES:
            raise StorageNotFoundError(f"Object {key} not found in {kind} storage") from e
        print(f"[S3] Download failed bucket={bucket} key={key}: {e}")
        raise StorageError(f"Failed to download {key}") from e
    except BotoCoreError as e:
        print(f"[S3] Download failed bucket={bucket} key={key}: {e}")
        raise StorageError(f"Failed to download {key}") from e


def key_exists(kind: str, key: str) -> bool:
    bucket = bucket_for(kind)
    try:
        _s3.head_object(Bucket=bucket, Key=key)
        return True
    except ClientError as e:
        if _error_code(e) in _NOT_FOUND_CODES:
            return False
        raise StorageError(f"Failed to check {key}") from e


def delete_key(kind: str, key: str) -> None:
    bucket = bucket_for(kind)
    try:
        _s3.delete_object(Bucket=bucket, Key=key)
    except (ClientError, BotoCoreError) as e:
        raise StorageError(f"Failed to delete {key}") from e


def locate_input(job_id: str) -> dict | None:
    """
    Find the input blob for a job uploaded straight to storage.

    One prefix listing for ``{job_id}.``; returns {"key", "content_type"} or None.
    """
    bucket = bucket_for(INPUT)
    try:
        resp = _s3.list_objects_v2(Bucket=bucket, Prefix=f"{job_id}.", MaxKeys=5)
    except (ClientError, BotoCoreError) as e:
        raise StorageError(f"Failed to look up input for {job_id}") from e

    keys = sorted(obj["Key"] for obj in resp.get("Contents", []) or [])
    if not keys:
        return None
    if len(keys) > 1:
        print(f"[S3] Multiple inputs for job {job_id}: {keys}, using {keys[0]}")
    key = keys[0]
    return {"key": key, "content_type": get_content_type_for_key(key)}


def presign_key(kind: str, key: str, expires_in: int | None = None) -> str:
    bucket = bucket_for(kind)
    try:
        return _s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in or config.PRESIGN_EXPIRY_SECONDS,
        )
    except (ClientError, BotoCoreError) as e:
        print(f"[S3] Failed to presign {bucket}/{key}: {e}")
        raise StorageError(f"Failed to sign URL for {key}") from e
