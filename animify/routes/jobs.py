"""
/api/jobs routes - upload, status polling and the per-identity gallery.

Handles:
- POST /api/jobs/<job_id>/upload - Store the input image and create the job (idempotent)
- GET /api/jobs/<job_id> - Job status for polling
- GET /api/jobs - Jobs owned by the current identity
"""

from flask import Blueprint, request, jsonify, g

from animify.middleware import no_cache, require_session, with_session
from animify.services import processing_service
from animify.utils.error_handlers import ValidationError

bp = Blueprint("jobs", __name__)

MAX_PAGE_SIZE = 100


@bp.route("/<job_id>/upload", methods=["POST"])
@with_session
def upload(job_id):
    """
    Multipart upload of the source photo (field name: file).

    Response (201 new job / 200 existing job):
    {
        "ok": true,
        "created": true,
        "job": {...}
    }
    """
    file = request.files.get("file")
    if file is None:
        raise ValidationError("Multipart field 'file' is required", code="MISSING_FILE")

    data = file.read()
    job, created = processing_service.create_job_from_upload(
        job_id,
        data,
        file.mimetype or file.content_type,
        owner_id=g.identity_id,
    )
    return jsonify({
        "ok": True,
        "created": created,
        "job": processing_service.describe_job(job),
    }), (201 if created else 200)


@bp.route("/<job_id>", methods=["GET"])
@no_cache
def status(job_id):
    return jsonify({"ok": True, "job": processing_service.get_job_status(job_id)})


@bp.route("", methods=["GET"])
@no_cache
@require_session
def list_jobs():
    try:
        limit = min(int(request.args.get("limit", 50)), MAX_PAGE_SIZE)
        offset = max(int(request.args.get("offset", 0)), 0)
    except ValueError:
        raise ValidationError("limit and offset must be integers", code="INVALID_PAGINATION")
    if limit < 1:
        raise ValidationError("limit must be at least 1", code="INVALID_PAGINATION")

    jobs = processing_service.list_jobs(g.identity_id, limit=limit, offset=offset)
    return jsonify({"ok": True, "jobs": jobs, "count": len(jobs)})
