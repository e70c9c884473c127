"""
Migration Service - moves job ownership when an anonymous user signs in.

Two paths:
- Cookie migration: the client sends the job ids it tracked locally; only jobs
  with no owner are claimed, anything already owned is reported, never moved.
- Identity migration: every job of one owner moves to another in one UPDATE.
  Used to merge an anonymous identity into an existing permanent one.

A merge is guarded by a durable pending marker (pending_migrations row):
written before the merge, cleared only after it succeeds, so a failed merge
can be retried later by the same signed-in user.
"""

from typing import Dict, Any, List

from animify.config import config
from animify.db import execute, query_one, query_all, Tables
from animify.services.job_store import JobStore
from animify.utils import dedupe, is_valid_job_id, short_id
from animify.utils.error_handlers import ValidationError


class MigrationService:
    """Ownership transfer for cookie-tracked jobs and merged identities."""

    # ─────────────────────────────────────────────────────────────
    # Cookie migration
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def validate_job_ids(job_ids: Any) -> List[str]:
        if not isinstance(job_ids, list) or not job_ids:
            raise ValidationError("job_ids must be a non-empty array", code="INVALID_JOB_IDS")

        max_batch = config.COOKIE_MIGRATION_MAX_BATCH
        if len(job_ids) > max_batch:
            raise ValidationError(f"Too many job ids (max {max_batch})", code="TOO_MANY_JOB_IDS")

        invalid = [i for i in job_ids if not is_valid_job_id(i)]
        if invalid:
            raise ValidationError(
                f"{len(invalid)} invalid job id(s)",
                code="INVALID_JOB_IDS",
                details={"invalid_count": len(invalid)},
            )
        return dedupe(job_ids)

    @staticmethod
    def migrate_cookie_jobs(job_ids: Any, to_owner: str) -> Dict[str, Any]:
        """
        Claim the unowned jobs among job_ids for to_owner.

        Returns:
            {
                "migrated": [...],         # now owned by to_owner
                "already_claimed": [...],  # had an owner, untouched
                "not_found": [...],        # no such job
                "migrated_count": n, "already_claimed_count": n, "not_found_count": n
            }
        """
        ids = MigrationService.validate_job_ids(job_ids)
        if not to_owner:
            raise ValidationError("to_owner is required", code="MISSING_OWNER")

        owners = {row["job_id"]: row.get("owner_id") for row in JobStore.find_many(ids)}
        not_found = [i for i in ids if i not in owners]
        unclaimed = [i for i in ids if i in owners and owners[i] is None]

        claimed = set(JobStore.claim_unowned(unclaimed, to_owner)) if unclaimed else set()
        migrated = [i for i in unclaimed if i in claimed]
        # Owned before we looked, or claimed by someone else in between
        already_claimed = [i for i in ids if i in owners and i not in claimed]

        print(
            f"[MIGRATE] Cookie migration to {short_id(to_owner)}: "
            f"migrated={len(migrated)} already_claimed={len(already_claimed)} not_found={len(not_found)}"
        )
        return {
            "migrated": migrated,
            "already_claimed": already_claimed,
            "not_found": not_found,
            "migrated_count": len(migrated),
            "already_claimed_count": len(already_claimed),
            "not_found_count": len(not_found),
        }

    # ─────────────────────────────────────────────────────────────
    # Identity migration
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def validate_owner_pair(from_owner, to_owner) -> None:
        """Reject a missing, non-string or identical owner pair. Runs no query."""
        if not from_owner or not to_owner or not isinstance(from_owner, str) or not isinstance(to_owner, str):
            raise ValidationError("from_owner and to_owner are required", code="MISSING_OWNER")
        if from_owner == to_owner:
            raise ValidationError("from_owner and to_owner must differ", code="SAME_OWNER")

    @staticmethod
    def migrate_identity(from_owner: str, to_owner: str) -> int:
        """
        Move every job owned by from_owner to to_owner.

        Validation happens before any query. Re-running after success moves
        nothing and returns 0.
        """
        MigrationService.validate_owner_pair(from_owner, to_owner)

        count = JobStore.reassign_owner(from_owner, to_owner)
        print(f"[MIGRATE] Identity migration {short_id(from_owner)} -> {short_id(to_owner)}: {count} job(s)")
        return count

    # ─────────────────────────────────────────────────────────────
    # Pending markers
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def record_pending(from_owner: str, to_owner: str) -> None:
        execute(
            f"""
            INSERT INTO {Tables.PENDING_MIGRATIONS} (from_owner, to_owner, created_at, updated_at)
            VALUES (%s, %s, NOW(), NOW())
            ON CONFLICT (from_owner, to_owner) DO UPDATE SET updated_at = NOW()
            """,
            (from_owner, to_owner),
        )

    @staticmethod
    def has_pending(from_owner: str, to_owner: str) -> bool:
        row = query_one(
            f"SELECT 1 AS ok FROM {Tables.PENDING_MIGRATIONS} WHERE from_owner = %s AND to_owner = %s",
            (from_owner, to_owner),
        )
        return row is not None

    @staticmethod
    def list_pending_for(to_owner: str) -> List[Dict[str, Any]]:
        return query_all(
            f"""
            SELECT from_owner, to_owner, attempts, last_error, created_at
            FROM {Tables.PENDING_MIGRATIONS}
            WHERE to_owner = %s
            ORDER BY created_at
            """,
            (to_owner,),
        )

    @staticmethod
    def clear_pending(from_owner: str, to_owner: str) -> None:
        execute(
            f"DELETE FROM {Tables.PENDING_MIGRATIONS} WHERE from_owner = %s AND to_owner = %s",
            (from_owner, to_owner),
        )

    @staticmethod
    def note_pending_failure(from_owner: str, to_owner: str, error: str) -> None:
        execute(
            f"""
            UPDATE {Tables.PENDING_MIGRATIONS}
            SET attempts = attempts + 1, last_error = %s, updated_at = NOW()
            WHERE from_owner = %s AND to_owner = %s
            """,
            ((error or "")[:500], from_owner, to_owner),
        )

    @staticmethod
    def complete_pending(from_owner: str, to_owner: str) -> int:
        """Run a marked migration and clear its marker. Errors propagate, marker stays."""
        count = MigrationService.migrate_identity(from_owner, to_owner)
        MigrationService.clear_pending(from_owner, to_owner)
        return count

    @staticmethod
    def run_pending(from_owner: str, to_owner: str) -> Dict[str, Any]:
        """
        Run a marked migration without raising.

        Used by sign-in: a failure is logged and recorded on the marker, and
        the marker stays for a later retry.
        """
        try:
            count = MigrationService.complete_pending(from_owner, to_owner)
            return {"from_owner": from_owner, "to_owner": to_owner, "ok": True, "migrated_count": count}
        except Exception as e:
            print(f"[MIGRATE] Pending migration {short_id(from_owner)} -> {short_id(to_owner)} failed: {e}")
            try:
                MigrationService.note_pending_failure(from_owner, to_owner, str(e))
            except Exception as note_err:
                print(f"[MIGRATE] Could not record failure on marker: {note_err}")
            return {"from_owner": from_owner, "to_owner": to_owner, "ok": False, "error": str(e)}
