"""
POST /api/unlock/<job_id> - full-resolution download for a purchased job.
"""

from flask import Blueprint, jsonify

from animify.middleware import no_cache
from animify.services.payment_service import PaymentService

bp = Blueprint("unlock", __name__)


@bp.route("/<job_id>", methods=["POST"])
@no_cache
def unlock(job_id):
    return jsonify(PaymentService.get_unlocked_download(job_id))
