"""
/api/auth routes - session lifecycle around the external identity provider.

Handles:
- POST /api/auth/session - Complete a provider sign-in (link or merge the anonymous identity)
- POST /api/auth/sign-out - Revoke the session and clear the cookie
- GET /api/auth/status - Current identity, if any
"""

from flask import Blueprint, request, jsonify

from animify.middleware import no_cache
from animify.services.identity_service import IdentityService

bp = Blueprint("auth", __name__)


def _access_token_from_request() -> str:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    data = request.get_json(silent=True) or {}
    return (data.get("access_token") or "").strip()


@bp.route("/session", methods=["POST"])
@no_cache
def complete_session():
    """
    Request: Authorization: Bearer <provider access token>
             (or body {"access_token": "..."})

    Response (200):
    {
        "ok": true,
        "identity_id": "...",
        "email": "a@b.c",
        "outcome": "linked" | "merged" | "signed_in" | "already_signed_in",
        "migration": {"ok": true, "migrated_count": 3, ...} | null,
        "retried_migrations": [...]
    }
    """
    response = jsonify({})
    result = IdentityService.complete_sign_in(request, response, _access_token_from_request())
    response.set_data(jsonify(result).get_data())
    return response


@bp.route("/sign-out", methods=["POST"])
@no_cache
def sign_out():
    session_id = IdentityService.get_session_id_from_request(request)
    revoked = IdentityService.revoke_session(session_id) if session_id else False

    response = jsonify({"ok": True, "revoked": revoked})
    IdentityService.clear_session_cookie(response)
    return response


@bp.route("/status", methods=["GET"])
@no_cache
def status():
    identity = IdentityService.get_current_identity(request)
    if not identity:
        return jsonify({"ok": True, "signed_in": False, "identity": None})

    return jsonify({
        "ok": True,
        "signed_in": not identity.get("is_anonymous", True),
        "identity": {
            "id": str(identity["id"]),
            "email": identity.get("email"),
            "is_anonymous": bool(identity.get("is_anonymous")),
        },
    })
