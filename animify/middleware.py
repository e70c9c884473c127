"""
Session decorators for Animify routes.

Usage:
    from animify.middleware import with_session, require_session

    @bp.route("/jobs", methods=["GET"])
    @require_session
    def list_jobs():
        # g.identity_id, g.identity and g.session_id are set
        ...

Service imports are lazy (inside functions) to avoid circular imports.
"""

import os
from functools import wraps

from flask import request, g, make_response

SESSION_DEBUG = os.getenv("SESSION_DEBUG", "").lower() in ("1", "true", "yes")


def _get_identity_service():
    from animify.services.identity_service import IdentityService
    return IdentityService


def _get_database_error():
    from animify.db import DatabaseError
    return DatabaseError


def _to_response(result):
    if hasattr(result, "headers"):
        return result
    if isinstance(result, tuple):
        response = make_response(result[0], result[1] if len(result) > 1 else 200)
        if len(result) > 2:
            for key, value in result[2].items():
                response.headers[key] = value
        return response
    return make_response(result)


def _database_error_response(where: str, err: Exception):
    from animify.utils.error_handlers import make_error_response, ACTION_RETRY_LATER

    print(f"[MIDDLEWARE] Database error in {where}: {err}")
    return make_error_response("DATABASE_ERROR", "Database error occurred", 500, ACTION_RETRY_LATER)


def no_cache(f):
    """Add Cache-Control/Pragma/Expires headers so proxies never cache the response."""
    @wraps(f)
    def decorated(*args, **kwargs):
        response = _to_response(f(*args, **kwargs))
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
        return response

    return decorated


def with_session(f):
    """
    Ensure the request has a session, creating an anonymous identity + session
    when there is none. The new session cookie is copied onto the route's response.

    Sets g.session_id, g.identity_id and g.identity.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        IdentityService = _get_identity_service()
        DatabaseError = _get_database_error()

        try:
            identity = IdentityService.get_current_identity(request)
            if identity:
                g.session_id = str(identity["session_id"])
                g.identity_id = str(identity["id"])
                g.identity = identity
                return f(*args, **kwargs)

            cookie_carrier = make_response()
            session_id, identity_id = IdentityService.get_or_create_session(request, cookie_carrier)
            g.session_id = session_id
            g.identity_id = identity_id
            g.identity = IdentityService.get_identity(identity_id)
        except DatabaseError as e:
            return _database_error_response("with_session", e)

        response = _to_response(f(*args, **kwargs))
        for cookie in cookie_carrier.headers.getlist("Set-Cookie"):
            response.headers.add("Set-Cookie", cookie)
        return response

    return decorated


def require_session(f):
    """
    Require a valid session; 401 without one. Never creates a session.

    Sets g.session_id, g.identity_id and g.identity.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        from animify.utils.error_handlers import make_error_response, ACTION_FIX_INPUT

        IdentityService = _get_identity_service()
        DatabaseError = _get_database_error()

        try:
            identity = IdentityService.get_current_identity(request)
        except DatabaseError as e:
            return _database_error_response("require_session", e)

        if not identity:
            if SESSION_DEBUG:
                print(
                    f"[MIDDLEWARE] require_session 401: path={request.path} "
                    f"origin={request.headers.get('Origin', '(none)')}"
                )
            return make_error_response("UNAUTHORIZED", "Valid session required", 401, ACTION_FIX_INPUT)

        g.session_id = str(identity["session_id"])
        g.identity_id = str(identity["id"])
        g.identity = identity
        return f(*args, **kwargs)

    return decorated
