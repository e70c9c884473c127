"""
Identity Service - anonymous-first identities and cookie sessions.

- Every visitor gets an anonymous identity + session on first request
- Jobs are owned by identity id, so an anonymous visitor already owns
  what they upload
- Signing in with the identity provider either links the provider user to the
  current anonymous identity (same id, nothing to move) or merges the
  anonymous identity into the permanent one already bound to that user

Cookie collisions:
- Browsers may send several animify_sid values (host-only vs domain cookie)
- All values are parsed and the one with an active session in the DB wins

Usage:
    from animify.services.identity_service import IdentityService

    session_id, identity_id = IdentityService.get_or_create_session(request, response)
"""

from typing import Optional, Dict, Any, Tuple, List
from datetime import timedelta
import os
import re
import uuid

from animify.config import config
from animify.db import (
    transaction,
    fetch_one,
    query_one,
    execute_returning,
    execute,
    hash_string,
    Tables,
    now_utc,
    DatabaseError,
)
from animify.services import auth_provider
from animify.services.migration_service import MigrationService
from animify.utils import log_db_continue, log_event, short_id
from animify.utils.error_handlers import ValidationError

SESSION_DEBUG = os.getenv("SESSION_DEBUG", "").lower() in ("1", "true", "yes")

if SESSION_DEBUG and config.IS_PROD:
    print("[WARN] SESSION_DEBUG enabled in production - disable after troubleshooting")

# Sign-in outcomes
OUTCOME_LINKED = "linked"
OUTCOME_MERGED = "merged"
OUTCOME_SIGNED_IN = "signed_in"
OUTCOME_ALREADY_SIGNED_IN = "already_signed_in"


class IdentityService:
    """Identities, sessions and the sign-in completion hook."""

    # ─────────────────────────────────────────────────────────────
    # Cookies
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _parse_session_ids(request) -> List[str]:
        """Every animify_sid value in the raw Cookie header, first occurrence order."""
        raw_cookie = request.headers.get("Cookie", "")
        if not raw_cookie:
            return []

        pattern = rf"{re.escape(config.SESSION_COOKIE_NAME)}=([a-fA-F0-9\-]+)"
        seen = set()
        unique = []
        for sid in re.findall(pattern, raw_cookie):
            if sid not in seen:
                seen.add(sid)
                unique.append(sid)
        return unique

    @staticmethod
    def _is_session_active(session_id: str) -> bool:
        row = query_one(
            f"""
            SELECT 1 AS ok FROM {Tables.SESSIONS}
            WHERE id = %s AND revoked_at IS NULL AND expires_at > NOW()
            """,
            (session_id,),
        )
        return row is not None

    @staticmethod
    def get_session_id_from_request(request) -> Optional[str]:
        """
        Pick the session id to use from the request cookies.

        With a single cookie it is returned as is (validated later). With a
        collision, the first candidate that is active in the DB wins; if none
        is active the first candidate is returned and will fail validation.
        """
        candidates = IdentityService._parse_session_ids(request)
        if not candidates:
            flask_sid = request.cookies.get(config.SESSION_COOKIE_NAME)
            return flask_sid or None

        if len(candidates) == 1:
            return candidates[0]

        for sid in candidates:
            if IdentityService._is_session_active(sid):
                if SESSION_DEBUG:
                    print(f"[SESSION] Cookie collision ({len(candidates)} values), using {short_id(sid)}")
                return sid

        if SESSION_DEBUG:
            print(f"[SESSION] Cookie collision ({len(candidates)} values), none active")
        return candidates[0]

    @staticmethod
    def set_session_cookie(response, session_id: str) -> None:
        """
        Set the session cookie. max_age matches the DB session expiry.

        When a cookie domain is configured in production, a host-only cookie
        of the same name is expired first so the two cannot collide.
        """
        domain = config.SESSION_COOKIE_DOMAIN

        if config.IS_PROD and domain:
            response.set_cookie(
                config.SESSION_COOKIE_NAME,
                "",
                max_age=0,
                expires=0,
                path=config.SESSION_COOKIE_PATH,
                secure=True,
                httponly=True,
                samesite="Lax",
            )

        cookie_kwargs = {
            "max_age": config.SESSION_TTL_SECONDS,
            "httponly": config.SESSION_COOKIE_HTTPONLY,
            "secure": config.SESSION_COOKIE_SECURE,
            "samesite": config.SESSION_COOKIE_SAMESITE,
            "path": config.SESSION_COOKIE_PATH,
        }
        if domain:
            cookie_kwargs["domain"] = domain

        response.set_cookie(config.SESSION_COOKIE_NAME, session_id, **cookie_kwargs)

        if SESSION_DEBUG:
            print(
                f"[SESSION] Cookie set: session={short_id(session_id)} domain={domain!r} "
                f"secure={config.SESSION_COOKIE_SECURE} samesite={config.SESSION_COOKIE_SAMESITE}"
            )

    @staticmethod
    def clear_session_cookie(response) -> None:
        domain = config.SESSION_COOKIE_DOMAIN
        path = config.SESSION_COOKIE_PATH
        if domain:
            if config.IS_PROD:
                response.delete_cookie(config.SESSION_COOKIE_NAME, path=path)
            response.delete_cookie(config.SESSION_COOKIE_NAME, path=path, domain=domain)
        else:
            response.delete_cookie(config.SESSION_COOKIE_NAME, path=path)

    # ─────────────────────────────────────────────────────────────
    # Identities
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def get_identity(identity_id: str) -> Optional[Dict[str, Any]]:
        return query_one(f"SELECT * FROM {Tables.IDENTITIES} WHERE id = %s", (identity_id,))

    @staticmethod
    def get_identity_by_provider(provider_user_id: str) -> Optional[Dict[str, Any]]:
        return query_one(
            f"SELECT * FROM {Tables.IDENTITIES} WHERE provider_user_id = %s",
            (provider_user_id,),
        )

    @staticmethod
    def bind_provider_user(
        identity_id: str,
        provider_user_id: str,
        email: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Turn an anonymous identity into a permanent one in place.

        Conditional on the identity not being bound yet; returns None when it
        already is (or when another identity took the provider user first).
        """
        try:
            return execute_returning(
                f"""
                UPDATE {Tables.IDENTITIES}
                SET provider_user_id = %s, email = COALESCE(%s, email),
                    is_anonymous = FALSE, last_seen_at = NOW()
                WHERE id = %s AND provider_user_id IS NULL
                RETURNING *
                """,
                (provider_user_id, email, identity_id),
            )
        except DatabaseError as e:
            # Unique violation: a concurrent sign-in bound the provider user elsewhere
            print(f"[IDENTITY] Bind of provider user to {short_id(identity_id)} lost: {e}")
            return None

    @staticmethod
    def create_permanent_identity(provider_user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        """Create the identity for a provider user, or return the one a concurrent call created."""
        identity = execute_returning(
            f"""
            INSERT INTO {Tables.IDENTITIES}
                (id, provider_user_id, is_anonymous, email, created_at, last_seen_at)
            VALUES (%s, %s, FALSE, %s, NOW(), NOW())
            ON CONFLICT (provider_user_id) DO NOTHING
            RETURNING *
            """,
            (str(uuid.uuid4()), provider_user_id, email),
        )
        if identity:
            print(f"[IDENTITY] Created permanent identity {short_id(identity['id'])}")
            return identity

        existing = IdentityService.get_identity_by_provider(provider_user_id)
        if not existing:
            raise DatabaseError("Failed to create identity")
        return existing

    @staticmethod
    def touch_identity(identity_id: str) -> None:
        try:
            execute(f"UPDATE {Tables.IDENTITIES} SET last_seen_at = NOW() WHERE id = %s", (identity_id,))
        except DatabaseError as e:
            log_db_continue("touch_identity", e)

    # ─────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _client_hashes(request) -> Tuple[Optional[str], Optional[str]]:
        ip_address = request.remote_addr
        user_agent = request.headers.get("User-Agent", "")
        return (
            hash_string(ip_address) if ip_address else None,
            hash_string(user_agent) if user_agent else None,
        )

    @staticmethod
    def create_session(identity_id: str, request) -> Dict[str, Any]:
        """Create a session for an identity. DB expiry matches the cookie max_age."""
        ip_hash, ua_hash = IdentityService._client_hashes(request)
        session = execute_returning(
            f"""
            INSERT INTO {Tables.SESSIONS}
                (id, identity_id, created_at, expires_at, ip_hash, user_agent_hash)
            VALUES (%s, %s, NOW(), %s, %s, %s)
            RETURNING *
            """,
            (
                str(uuid.uuid4()),
                identity_id,
                now_utc() + timedelta(days=config.SESSION_TTL_DAYS),
                ip_hash,
                ua_hash,
            ),
        )
        if not session:
            raise DatabaseError("Failed to create session")
        return session

    @staticmethod
    def _create_anonymous_session_atomic(request) -> Tuple[str, str]:
        """Create an anonymous identity and its session in one transaction."""
        identity_id = str(uuid.uuid4())
        session_id = str(uuid.uuid4())
        expires_at = now_utc() + timedelta(days=config.SESSION_TTL_DAYS)
        ip_hash, ua_hash = IdentityService._client_hashes(request)

        with transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.IDENTITIES} (id, is_anonymous, created_at, last_seen_at)
                VALUES (%s, TRUE, NOW(), NOW())
                """,
                (identity_id,),
            )
            cur.execute(
                f"""
                INSERT INTO {Tables.SESSIONS}
                    (id, identity_id, created_at, expires_at, ip_hash, user_agent_hash)
                VALUES (%s, %s, NOW(), %s, %s, %s)
                RETURNING id
                """,
                (session_id, identity_id, expires_at, ip_hash, ua_hash),
            )
            if not fetch_one(cur):
                raise DatabaseError("Failed to create session")

        if SESSION_DEBUG:
            print(f"[SESSION] Created anonymous identity {short_id(identity_id)} session {short_id(session_id)}")
        return session_id, identity_id

    @staticmethod
    def validate_session(session_id: str) -> Optional[Dict[str, Any]]:
        """
        Return the identity behind an active session, or None.

        The row is the identity plus session_id and session_expires_at.
        """
        if not session_id:
            return None

        result = query_one(
            f"""
            SELECT i.*, s.id AS session_id, s.expires_at AS session_expires_at
            FROM {Tables.SESSIONS} s
            JOIN {Tables.IDENTITIES} i ON i.id = s.identity_id
            WHERE s.id = %s
              AND s.revoked_at IS NULL
              AND s.expires_at > NOW()
            """,
            (session_id,),
        )
        if result:
            IdentityService.touch_identity(str(result["id"]))
        return result

    @staticmethod
    def revoke_session(session_id: str) -> bool:
        count = execute(
            f"UPDATE {Tables.SESSIONS} SET revoked_at = NOW() WHERE id = %s AND revoked_at IS NULL",
            (session_id,),
        )
        return count > 0

    @staticmethod
    def get_or_create_session(request, response) -> Tuple[str, str]:
        """
        Return (session_id, identity_id) for the request, creating an anonymous
        identity + session (and setting the cookie) when there is no valid one.
        """
        cookie_session_id = IdentityService.get_session_id_from_request(request)
        if cookie_session_id:
            identity = IdentityService.validate_session(cookie_session_id)
            if identity:
                return cookie_session_id, str(identity["id"])
            if SESSION_DEBUG:
                print(f"[SESSION] Invalid/expired session {short_id(cookie_session_id)}, creating new")

        session_id, identity_id = IdentityService._create_anonymous_session_atomic(request)
        IdentityService.set_session_cookie(response, session_id)
        return session_id, identity_id

    @staticmethod
    def get_current_identity(request) -> Optional[Dict[str, Any]]:
        """Identity for the request session, never creating one."""
        session_id = IdentityService.get_session_id_from_request(request)
        if not session_id:
            return None
        return IdentityService.validate_session(session_id)

    @staticmethod
    def link_session_to_identity(session_id: Optional[str], identity_id: str, request, response) -> Dict[str, Any]:
        """Revoke the old session (if any), open one for identity_id and set the cookie."""
        if session_id:
            IdentityService.revoke_session(session_id)
        session = IdentityService.create_session(identity_id, request)
        IdentityService.set_session_cookie(response, session["id"])
        print(
            f"[SESSION] Session for identity {short_id(identity_id)} "
            f"(replaces {short_id(session_id) if session_id else 'none'})"
        )
        return session

    # ─────────────────────────────────────────────────────────────
    # Sign-in completion
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _merge_into(from_owner: str, to_owner: str) -> Dict[str, Any]:
        """Marker first, then migrate and clear. Never raises."""
        try:
            MigrationService.record_pending(from_owner, to_owner)
        except DatabaseError as e:
            log_db_continue("record_pending", e)
            return {"from_owner": from_owner, "to_owner": to_owner, "ok": False, "error": str(e)}
        return MigrationService.run_pending(from_owner, to_owner)

    @staticmethod
    def _retry_outstanding(to_owner: str, skip_from: Optional[str]) -> List[Dict[str, Any]]:
        try:
            pending = MigrationService.list_pending_for(to_owner)
        except DatabaseError as e:
            log_db_continue("list_pending_for", e)
            return []
        return [
            MigrationService.run_pending(row["from_owner"], to_owner)
            for row in pending
            if row["from_owner"] != skip_from
        ]

    @staticmethod
    def complete_sign_in(request, response, access_token: str) -> Dict[str, Any]:
        """
        Finish a sign-in with the identity provider.

        - provider user not bound + anonymous session identity -> bind in place ("linked")
        - provider user bound to another identity + anonymous session -> move the
          anonymous identity's jobs to it ("merged")
        - otherwise switch the session to the bound (or new) identity ("signed_in")

        Migration failures are logged and reported in the result, never raised.
        The marker stays so the merge can be retried.

        Raises:
            InvalidAccessTokenError: token rejected
            AuthProviderError: provider unreachable or not configured
            ValidationError: token belongs to an anonymous provider user
        """
        user = auth_provider.get_user(access_token)
        if user.is_anonymous:
            raise ValidationError("Sign in with a permanent account", code="ANONYMOUS_PROVIDER_USER")

        session_id = IdentityService.get_session_id_from_request(request)
        current = IdentityService.validate_session(session_id) if session_id else None
        current_id = str(current["id"]) if current else None
        current_is_anonymous = bool(current and current.get("is_anonymous") and not current.get("provider_user_id"))

        target = IdentityService.get_identity_by_provider(user.id)
        outcome = OUTCOME_SIGNED_IN
        migration = None

        if target is None and current_is_anonymous:
            target = IdentityService.bind_provider_user(current_id, user.id, user.email)
            if target:
                outcome = OUTCOME_LINKED
            else:
                target = IdentityService.get_identity_by_provider(user.id)

        if target is None:
            target = IdentityService.create_permanent_identity(user.id, user.email)

        target_id = str(target["id"])
        if outcome != OUTCOME_LINKED:
            if current_id == target_id:
                outcome = OUTCOME_ALREADY_SIGNED_IN
            elif current_is_anonymous:
                outcome = OUTCOME_MERGED
                migration = IdentityService._merge_into(current_id, target_id)

        retried = IdentityService._retry_outstanding(target_id, skip_from=current_id)

        if current_id != target_id:
            session = IdentityService.link_session_to_identity(session_id if current else None, target_id, request, response)
            session_id = session["id"]

        print(f"[AUTH] Sign-in complete: identity={short_id(target_id)} outcome={outcome}")
        log_event("sign_in_completed", {
            "identity_id": target_id,
            "outcome": outcome,
            "from_identity_id": current_id if outcome == OUTCOME_MERGED else None,
            "migration_ok": migration["ok"] if migration else None,
        })
        return {
            "ok": True,
            "identity_id": target_id,
            "email": target.get("email"),
            "outcome": outcome,
            "migration": migration,
            "retried_migrations": retried,
        }
