"""
Tests for ownership migration: cookie lists, identity merges, pending markers
and the sign-in completion hook.

Run locally:
    python -m pytest animify/tests/test_migration.py -v
"""

from __future__ import annotations

import uuid
from types import SimpleNamespace

import pytest
from flask import Response

from animify.config import config
from animify.services import identity_service
from animify.services.auth_provider import InvalidAccessTokenError, ProviderUser
from animify.services.identity_service import IdentityService
from animify.services.migration_service import MigrationService
from animify.utils.error_handlers import ValidationError


class TestCookieMigration:
    def test_claims_only_unowned_jobs(self, job_store):
        job_store.seed("x", owner_id=None)
        job_store.seed("y", owner_id="other")

        result = MigrationService.migrate_cookie_jobs(["x", "y", "z"], "me")

        assert result["migrated"] == ["x"]
        assert result["already_claimed"] == ["y"]
        assert result["not_found"] == ["z"]
        assert result["migrated_count"] == 1
        assert job_store.get("x")["owner_id"] == "me"
        assert job_store.get("y")["owner_id"] == "other"

    def test_own_jobs_are_reported_as_already_claimed(self, job_store):
        job_store.seed("x", owner_id="me")
        result = MigrationService.migrate_cookie_jobs(["x"], "me")
        assert result["migrated"] == []
        assert result["already_claimed"] == ["x"]

    def test_duplicates_are_collapsed(self, job_store):
        job_store.seed("x")
        result = MigrationService.migrate_cookie_jobs(["x", "x", "x"], "me")
        assert result["migrated"] == ["x"]
        assert result["migrated_count"] == 1

    @pytest.mark.parametrize("job_ids", [[], None, "x", {"x": 1}])
    def test_rejects_non_list_or_empty(self, job_store, job_ids):
        with pytest.raises(ValidationError):
            MigrationService.migrate_cookie_jobs(job_ids, "me")

    def test_rejects_batch_over_limit(self, job_store):
        ids = [f"job-{i}" for i in range(config.COOKIE_MIGRATION_MAX_BATCH + 1)]
        with pytest.raises(ValidationError) as exc_info:
            MigrationService.migrate_cookie_jobs(ids, "me")
        assert exc_info.value.code == "TOO_MANY_JOB_IDS"

    def test_rejects_malformed_ids_before_querying(self, job_store, monkeypatch):
        def must_not_query(*args, **kwargs):
            raise AssertionError("queried with invalid input")

        monkeypatch.setattr(job_store, "find_many", must_not_query)
        with pytest.raises(ValidationError) as exc_info:
            MigrationService.migrate_cookie_jobs(["ok", "not ok", "x" * 129], "me")
        assert exc_info.value.details["invalid_count"] == 2


class TestIdentityMigration:
    def test_moves_every_job(self, job_store):
        job_store.seed("a", owner_id="anon1")
        job_store.seed("b", owner_id="anon1")
        job_store.seed("c", owner_id="someone")

        assert MigrationService.migrate_identity("anon1", "user1") == 2
        assert job_store.get("a")["owner_id"] == "user1"
        assert job_store.get("c")["owner_id"] == "someone"

    def test_rerun_moves_nothing(self, job_store):
        job_store.seed("a", owner_id="anon1")
        MigrationService.migrate_identity("anon1", "user1")
        assert MigrationService.migrate_identity("anon1", "user1") == 0

    @pytest.mark.parametrize("from_owner,to_owner", [("anon1", "anon1"), ("", "user1"), ("anon1", None)])
    def test_rejects_before_any_query(self, job_store, monkeypatch, from_owner, to_owner):
        def must_not_query(*args, **kwargs):
            raise AssertionError("queried with invalid input")

        monkeypatch.setattr(job_store, "reassign_owner", must_not_query)
        with pytest.raises(ValidationError):
            MigrationService.migrate_identity(from_owner, to_owner)


class TestPendingMarkers:
    def test_success_clears_marker(self, job_store, pending_markers):
        job_store.seed("a", owner_id="anon1")
        pending_markers.record("anon1", "user1")

        result = MigrationService.run_pending("anon1", "user1")

        assert result["ok"] is True
        assert result["migrated_count"] == 1
        assert not pending_markers.has("anon1", "user1")

    def test_failure_keeps_marker_and_records_error(self, job_store, pending_markers, monkeypatch):
        def broken(from_owner, to_owner):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(job_store, "reassign_owner", broken)
        pending_markers.record("anon1", "user1")

        result = MigrationService.run_pending("anon1", "user1")

        assert result["ok"] is False
        assert "connection reset" in result["error"]
        row = pending_markers.rows[("anon1", "user1")]
        assert row["attempts"] == 1
        assert "connection reset" in row["last_error"]


# ─────────────────────────────────────────────────────────────
# Sign-in completion
# ─────────────────────────────────────────────────────────────

class FakeIdentities:
    """identities + sessions tables for the sign-in hook."""

    def __init__(self):
        self.identities: dict[str, dict] = {}
        self.sessions: dict[str, str] = {}
        self.revoked: list[str] = []

    def add(self, identity_id, provider_user_id=None, email=None):
        self.identities[identity_id] = {
            "id": identity_id,
            "provider_user_id": provider_user_id,
            "is_anonymous": provider_user_id is None,
            "email": email,
        }
        return self.identities[identity_id]

    def open_session(self, identity_id):
        session_id = str(uuid.uuid4())
        self.sessions[session_id] = identity_id
        return session_id

    def validate_session(self, session_id):
        identity_id = self.sessions.get(session_id)
        if not identity_id:
            return None
        return dict(self.identities[identity_id], session_id=session_id)

    def by_provider(self, provider_user_id):
        for identity in self.identities.values():
            if identity["provider_user_id"] == provider_user_id:
                return dict(identity)
        return None

    def bind(self, identity_id, provider_user_id, email=None):
        identity = self.identities[identity_id]
        if identity["provider_user_id"] is not None:
            return None
        identity.update(provider_user_id=provider_user_id, is_anonymous=False, email=email)
        return dict(identity)

    def create_permanent(self, provider_user_id, email=None):
        return dict(self.add(str(uuid.uuid4()), provider_user_id, email))

    def revoke(self, session_id):
        self.revoked.append(session_id)
        return self.sessions.pop(session_id, None) is not None

    def create_session(self, identity_id, request):
        return {"id": self.open_session(identity_id)}


@pytest.fixture
def identities(monkeypatch):
    fake = FakeIdentities()
    monkeypatch.setattr(IdentityService, "validate_session", staticmethod(fake.validate_session))
    monkeypatch.setattr(IdentityService, "get_identity_by_provider", staticmethod(fake.by_provider))
    monkeypatch.setattr(IdentityService, "bind_provider_user", staticmethod(fake.bind))
    monkeypatch.setattr(IdentityService, "create_permanent_identity", staticmethod(fake.create_permanent))
    monkeypatch.setattr(IdentityService, "revoke_session", staticmethod(fake.revoke))
    monkeypatch.setattr(IdentityService, "create_session", staticmethod(fake.create_session))
    return fake


def _sign_in(monkeypatch, session_id, user):
    monkeypatch.setattr(
        IdentityService, "get_session_id_from_request", staticmethod(lambda request: session_id)
    )
    monkeypatch.setattr(identity_service.auth_provider, "get_user", lambda token: user)
    response = Response()
    request = SimpleNamespace(headers={}, remote_addr="127.0.0.1")
    return IdentityService.complete_sign_in(request, response, "token"), response


class TestCompleteSignIn:
    def test_new_provider_user_links_anonymous_identity_in_place(
        self, monkeypatch, job_store, pending_markers, identities
    ):
        identities.add("anon1")
        session_id = identities.open_session("anon1")
        job_store.seed("a", owner_id="anon1")

        result, response = _sign_in(monkeypatch, session_id, ProviderUser("prov-1", "a@b.c", False))

        assert result["outcome"] == "linked"
        assert result["identity_id"] == "anon1"
        assert result["migration"] is None
        assert job_store.get("a")["owner_id"] == "anon1"
        assert identities.revoked == []
        assert response.headers.getlist("Set-Cookie") == []

    def test_known_provider_user_merges_anonymous_jobs(
        self, monkeypatch, job_store, pending_markers, identities
    ):
        identities.add("anon1")
        identities.add("user1", provider_user_id="prov-1")
        session_id = identities.open_session("anon1")
        job_store.seed("a", owner_id="anon1")
        job_store.seed("b", owner_id="anon1")

        result, response = _sign_in(monkeypatch, session_id, ProviderUser("prov-1", "a@b.c", False))

        assert result["outcome"] == "merged"
        assert result["identity_id"] == "user1"
        assert result["migration"]["ok"] is True
        assert result["migration"]["migrated_count"] == 2
        assert job_store.get("a")["owner_id"] == "user1"
        assert pending_markers.rows == {}
        assert identities.revoked == [session_id]
        assert any(config.SESSION_COOKIE_NAME in c for c in response.headers.getlist("Set-Cookie"))

    def test_failed_merge_does_not_fail_sign_in(
        self, monkeypatch, job_store, pending_markers, identities
    ):
        identities.add("anon1")
        identities.add("user1", provider_user_id="prov-1")
        session_id = identities.open_session("anon1")

        def broken(from_owner, to_owner):
            raise RuntimeError("db gone")

        monkeypatch.setattr(job_store, "reassign_owner", broken)

        result, _ = _sign_in(monkeypatch, session_id, ProviderUser("prov-1", None, False))

        assert result["ok"] is True
        assert result["outcome"] == "merged"
        assert result["migration"]["ok"] is False
        assert pending_markers.has("anon1", "user1")

    def test_outstanding_markers_are_retried(self, monkeypatch, job_store, pending_markers, identities):
        identities.add("user1", provider_user_id="prov-1")
        job_store.seed("old", owner_id="anon-old")
        pending_markers.record("anon-old", "user1")

        result, _ = _sign_in(monkeypatch, None, ProviderUser("prov-1", None, False))

        assert result["outcome"] == "signed_in"
        assert [r["ok"] for r in result["retried_migrations"]] == [True]
        assert job_store.get("old")["owner_id"] == "user1"
        assert not pending_markers.has("anon-old", "user1")

    def test_already_signed_in(self, monkeypatch, job_store, pending_markers, identities):
        identities.add("user1", provider_user_id="prov-1")
        session_id = identities.open_session("user1")

        result, _ = _sign_in(monkeypatch, session_id, ProviderUser("prov-1", None, False))

        assert result["outcome"] == "already_signed_in"
        assert identities.revoked == []

    def test_no_session_creates_permanent_identity(self, monkeypatch, job_store, pending_markers, identities):
        result, response = _sign_in(monkeypatch, None, ProviderUser("prov-9", "n@e.w", False))

        assert result["outcome"] == "signed_in"
        assert identities.by_provider("prov-9")["id"] == result["identity_id"]
        assert response.headers.getlist("Set-Cookie")

    def test_anonymous_provider_user_is_rejected(self, monkeypatch, job_store, pending_markers, identities):
        with pytest.raises(ValidationError):
            _sign_in(monkeypatch, None, ProviderUser("prov-anon", None, True))

    def test_invalid_token_propagates(self, monkeypatch, job_store, pending_markers, identities):
        def reject(token):
            raise InvalidAccessTokenError("Access token was rejected")

        monkeypatch.setattr(identity_service.auth_provider, "get_user", reject)
        with pytest.raises(InvalidAccessTokenError):
            IdentityService.complete_sign_in(SimpleNamespace(headers={}), Response(), "bad")
