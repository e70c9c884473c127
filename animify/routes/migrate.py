"""
/api/migrate routes - move job ownership to the signed-in identity.

Handles:
- POST /api/migrate/cookie - Claim unowned jobs the browser tracked locally
- POST /api/migrate/identity - Retry a pending identity merge
"""

from flask import Blueprint, request, jsonify, g

from animify.middleware import require_session
from animify.services.migration_service import MigrationService
from animify.utils import log_event, short_id
from animify.utils.error_handlers import IntegrityViolationError

bp = Blueprint("migrate", __name__)


def _forbidden(message: str, details: dict) -> IntegrityViolationError:
    print(f"[MIGRATE] SECURITY: {message} (session identity {short_id(g.identity_id)})")
    log_event("migration_rejected", dict(details, identity_id=g.identity_id))
    return IntegrityViolationError(message, code="MIGRATION_FORBIDDEN", status_code=403, details=details)


@bp.route("/cookie", methods=["POST"])
@require_session
def migrate_cookie():
    """
    Request body:
    {
        "job_ids": ["abc", "def"],
        "to_owner": "<identity id>"   // optional, defaults to the session identity
    }

    Response (200):
    {
        "ok": true,
        "migrated": [...], "already_claimed": [...], "not_found": [...],
        "migrated_count": 1, "already_claimed_count": 1, "not_found_count": 0
    }
    """
    data = request.get_json(silent=True) or {}
    to_owner = data.get("to_owner") or g.identity_id
    if to_owner != g.identity_id:
        raise _forbidden("Jobs can only be migrated to the signed-in identity", {"to_owner": to_owner})

    result = MigrationService.migrate_cookie_jobs(data.get("job_ids"), to_owner)
    return jsonify(dict(result, ok=True))


@bp.route("/identity", methods=["POST"])
@require_session
def migrate_identity():
    """
    Retry a merge that failed during sign-in.

    Request body:
    {
        "from_owner": "<anonymous identity id>",
        "to_owner": "<signed-in identity id>"
    }
    """
    data = request.get_json(silent=True) or {}
    from_owner = data.get("from_owner")
    to_owner = data.get("to_owner")

    MigrationService.validate_owner_pair(from_owner, to_owner)
    if to_owner != g.identity_id:
        raise _forbidden("Jobs can only be migrated to the signed-in identity", {"to_owner": to_owner})
    if not MigrationService.has_pending(from_owner, to_owner):
        raise _forbidden("No pending migration for these identities", {"from_owner": from_owner, "to_owner": to_owner})

    count = MigrationService.complete_pending(from_owner, to_owner)
    return jsonify({"ok": True, "from_owner": from_owner, "to_owner": to_owner, "migrated_count": count})
