"""
Processing Service - the per-job image pipeline.

Flow of process_job(job_id):
1. Read the job; if there is no record, locate the uploaded input by
   convention and create the record (insert-if-absent)
2. Output already committed -> return it, no transformation call
3. Claim the job (conditional UPDATE); a held claim -> ConflictError
4. Download input -> transform -> upload output + locked preview
5. Commit both keys in one terminal write, or record the failure

Job States:
- created: record exists, never attempted
- processing: an attempt holds the job
- completed: output (and preview) committed, terminal
- failed: last attempt failed; the next call retries

No retries happen here: every call is at most one attempt.
"""

from typing import Optional, Dict, Any, List, Tuple

from animify.config import config
from animify.services import image_service
from animify.services import storage_service as storage
from animify.services import transform_service as transformer
from animify.services.job_store import JobStore, JobState
from animify.utils import is_valid_job_id, log_db_continue, log_event
from animify.utils.error_handlers import (
    AppError,
    ConflictError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

ALLOWED_UPLOAD_TYPES = ("image/jpeg", "image/png", "image/webp")


def validate_job_id(job_id: Any) -> str:
    if not is_valid_job_id(job_id):
        raise ValidationError("job_id must be 1-128 characters of letters, digits, '-' or '_'", code="INVALID_JOB_ID")
    return job_id


def has_output(job: Dict[str, Any]) -> bool:
    return bool(job.get("output_key"))


def is_processed(job: Dict[str, Any]) -> bool:
    """True once the job has what a buyer is shown before paying."""
    if config.PREVIEW_ENABLED:
        return bool(job.get("preview_key"))
    return has_output(job)


def preview_url(job: Dict[str, Any]) -> Optional[str]:
    if not job.get("preview_key"):
        return None
    return storage.build_public_url(storage.PREVIEW, job["preview_key"])


def _result(job: Dict[str, Any], was_existing: bool) -> Dict[str, Any]:
    return {
        "ok": True,
        "job_id": job["job_id"],
        "state": job["state"],
        "output_ref": job.get("output_key"),
        "preview_ref": job.get("preview_key"),
        "preview_url": preview_url(job),
        "was_existing": was_existing,
    }


# ─────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────

def create_job_from_upload(
    job_id: str,
    data: bytes,
    content_type: str,
    owner_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], bool]:
    """
    Store an upload and create its job record.

    Idempotent per job_id: a second upload for an existing job returns the
    existing record and writes nothing.

    Returns (job, created).
    """
    validate_job_id(job_id)
    base_type = (content_type or "").split(";", 1)[0].strip().lower()
    if base_type == "image/jpg":
        base_type = "image/jpeg"
    if base_type not in ALLOWED_UPLOAD_TYPES:
        raise ValidationError("Only JPEG, PNG and WEBP images are accepted", code="UNSUPPORTED_IMAGE_TYPE")
    if not data:
        raise ValidationError("Uploaded file is empty", code="EMPTY_FILE")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValidationError(f"Image exceeds {config.MAX_UPLOAD_MB}MB", code="IMAGE_TOO_LARGE")

    existing = JobStore.get(job_id)
    if existing:
        print(f"[UPLOAD] Job {job_id} already exists (state={existing['state']}), keeping original input")
        return existing, False

    # Rejects files that only claim to be images
    image_service.image_dimensions(data)

    input_key = storage.build_input_key(job_id, base_type)
    storage.upload_bytes(storage.INPUT, input_key, data, base_type)
    job, created = JobStore.insert_if_absent(job_id, input_key, base_type, owner_id)
    print(f"[UPLOAD] Job {job_id} input stored at {input_key} (created={created}, owner={owner_id})")
    return job, created


# ─────────────────────────────────────────────────────────────
# Processing
# ─────────────────────────────────────────────────────────────

def _load_or_create(job_id: str) -> Dict[str, Any]:
    job = JobStore.get(job_id)
    if job:
        return job

    located = storage.locate_input(job_id)
    if not located:
        raise NotFoundError(f"No uploaded image found for job {job_id}", code="INPUT_NOT_FOUND")

    job, created = JobStore.insert_if_absent(job_id, located["key"], located["content_type"])
    if created:
        print(f"[PROCESS] Created record for job {job_id} from stored input {located['key']}")
    return job


def _record_failure(job_id: str, attempt: int, message: str) -> None:
    try:
        JobStore.fail_processing(job_id, attempt, message)
    except Exception as e:
        log_db_continue(f"fail_processing({job_id})", e)
    print(f"[PROCESS] Job {job_id} attempt {attempt} failed: {message}")


def _discard_uploads(job_id: str, uploaded: List[Tuple[str, str]]) -> None:
    """Remove blobs of an attempt that will never be committed. Keys are attempt-specific."""
    for kind, key in uploaded:
        try:
            storage.delete_key(kind, key)
        except AppError as e:
            print(f"[PROCESS] Job {job_id}: could not remove orphaned {kind}/{key}: {e.message}")


def _run_attempt(job: Dict[str, Any]) -> Dict[str, Any]:
    job_id = job["job_id"]
    attempt = job["attempts"]
    uploaded: List[Tuple[str, str]] = []
    committing = False
    print(f"[PROCESS] Job {job_id} attempt {attempt} started")

    try:
        input_bytes = storage.download_bytes(storage.INPUT, job["input_key"])
        result = transformer.transform_image(input_bytes, job.get("input_content_type"))

        output_key = storage.build_output_key(job_id, result.content_type, attempt)
        storage.upload_bytes(storage.OUTPUT, output_key, result.data, result.content_type)
        uploaded.append((storage.OUTPUT, output_key))

        preview_key = None
        if config.PREVIEW_ENABLED:
            preview = image_service.build_locked_preview(result.data, config.PREVIEW_MAX_DIMENSION)
            preview_key = storage.build_preview_key(job_id, attempt)
            storage.upload_bytes(storage.PREVIEW, preview_key, preview, "image/png")
            uploaded.append((storage.PREVIEW, preview_key))

        committing = True
        completed = JobStore.complete_processing(job_id, attempt, output_key, preview_key)
    except AppError as e:
        _record_failure(job_id, attempt, e.message)
        if not committing:
            _discard_uploads(job_id, uploaded)
        raise
    except Exception as e:
        _record_failure(job_id, attempt, f"{type(e).__name__}: {e}")
        # The terminal write may have landed before the error; keep its blobs
        if not committing:
            _discard_uploads(job_id, uploaded)
        raise UpstreamError("Image processing failed") from e

    if completed:
        print(f"[PROCESS] Job {job_id} completed: output={output_key} preview={preview_key}")
        log_event("job_completed", {"job_id": job_id, "attempt": attempt, "output_key": output_key, "preview_key": preview_key})
        return _result(completed, was_existing=False)

    # A newer attempt reclaimed the job (stale claim); our blobs are unreferenced
    _discard_uploads(job_id, uploaded)
    current = JobStore.get(job_id)
    if current and has_output(current):
        print(f"[PROCESS] Job {job_id} attempt {attempt} superseded, returning the committed output")
        return _result(current, was_existing=True)
    raise ConflictError("Job state changed during processing", code="PROCESSING_SUPERSEDED")


def process_job(job_id: str) -> Dict[str, Any]:
    """
    Run the pipeline for one job at most once.

    Raises:
        ValidationError: malformed job_id or undecodable input
        NotFoundError: no record and no stored input, or the input blob is gone
        ConflictError: another attempt holds the job
        UpstreamError: transformation or storage failure (state is now 'failed')
    """
    validate_job_id(job_id)
    job = _load_or_create(job_id)

    if has_output(job):
        print(f"[PROCESS] Job {job_id} already completed, returning stored output")
        return _result(job, was_existing=True)

    claimed = JobStore.claim_for_processing(job_id, config.PROCESSING_STALE_SECONDS)
    if not claimed:
        current = JobStore.get(job_id) or job
        if has_output(current):
            return _result(current, was_existing=True)
        print(f"[PROCESS] Job {job_id} is held by another attempt (state={current['state']})")
        raise ConflictError("Job is already being processed", code="ALREADY_PROCESSING")

    return _run_attempt(claimed)


# ─────────────────────────────────────────────────────────────
# Status
# ─────────────────────────────────────────────────────────────

def describe_job(job: Dict[str, Any]) -> Dict[str, Any]:
    described = JobStore.format_job(job)
    described["preview_url"] = preview_url(job)
    described["ready"] = job["state"] == JobState.COMPLETED and has_output(job)
    return described


def get_job_status(job_id: str) -> Dict[str, Any]:
    validate_job_id(job_id)
    job = JobStore.get(job_id)
    if not job:
        raise NotFoundError(f"Job {job_id} not found", code="JOB_NOT_FOUND")
    return describe_job(job)


def list_jobs(owner_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    return [describe_job(job) for job in JobStore.list_for_owner(owner_id, limit, offset)]
