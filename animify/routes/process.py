"""
POST /api/process/<job_id> - run the image pipeline for one job.

200 with output/preview refs, 409 while another attempt holds the job,
404 when no input was uploaded, 500 on transformation or storage failure.
"""

from flask import Blueprint, jsonify

from animify.services import processing_service

bp = Blueprint("process", __name__)


@bp.route("/<job_id>", methods=["POST"])
def process(job_id):
    return jsonify(processing_service.process_job(job_id))
