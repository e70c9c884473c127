"""
Job Store - persistence for job records.

One row per job_id. Every state change is a single conditional UPDATE so
concurrent requests (across processes) resolve in the database:

- insert_if_absent: first writer wins, losers read the existing row back
- claim_for_processing: only one caller moves a job into 'processing'
- complete_processing: output/preview keys are committed together, once
- mark_purchased: purchased flips false -> true exactly once
- claim_unowned / reassign_owner: owner changes only when it matches the source

Methods returning a row return None when the condition did not match.
"""

from typing import Optional, Dict, Any, List, Tuple

from animify.db import transaction, fetch_one, fetch_all, query_one, query_all, Tables


class JobState:
    """Valid job states."""
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ChargeStatus:
    """Charge reconciliation statuses stored on the job."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStore:
    """Conditional reads and writes on the jobs table."""

    # ─────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def get(job_id: str) -> Optional[Dict[str, Any]]:
        return query_one(f"SELECT * FROM {Tables.JOBS} WHERE job_id = %s", (job_id,))

    @staticmethod
    def get_by_charge_intent(charge_intent_id: str) -> Optional[Dict[str, Any]]:
        return query_one(
            f"SELECT * FROM {Tables.JOBS} WHERE charge_intent_id = %s",
            (charge_intent_id,),
        )

    @staticmethod
    def list_for_owner(owner_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return query_all(
            f"""
            SELECT * FROM {Tables.JOBS}
            WHERE owner_id = %s
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            (owner_id, limit, offset),
        )

    @staticmethod
    def find_many(job_ids: List[str]) -> List[Dict[str, Any]]:
        """Return (job_id, owner_id) for each id that exists."""
        if not job_ids:
            return []
        return query_all(
            f"SELECT job_id, owner_id FROM {Tables.JOBS} WHERE job_id = ANY(%s)",
            (list(job_ids),),
        )

    # ─────────────────────────────────────────────────────────────
    # Creation
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def insert_if_absent(
        job_id: str,
        input_key: str,
        input_content_type: Optional[str],
        owner_id: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Create the job record unless it already exists.

        Returns (job, created). A concurrent loser gets the winner's row
        with created=False.
        """
        with transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.JOBS}
                    (job_id, owner_id, state, input_key, input_content_type, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, NOW(), NOW())
                ON CONFLICT (job_id) DO NOTHING
                RETURNING *
                """,
                (job_id, owner_id, JobState.CREATED, input_key, input_content_type),
            )
            job = fetch_one(cur)
            if job:
                return job, True

            cur.execute(f"SELECT * FROM {Tables.JOBS} WHERE job_id = %s", (job_id,))
            return fetch_one(cur), False

    # ─────────────────────────────────────────────────────────────
    # Processing state machine
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def claim_for_processing(job_id: str, stale_after_seconds: int) -> Optional[Dict[str, Any]]:
        """
        Move a job into 'processing' if nobody else holds it.

        Claimable: created, failed, or a processing claim older than
        stale_after_seconds. A job with an output is never reclaimed.
        """
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET state = %s,
                    processing_started_at = NOW(),
                    attempts = attempts + 1,
                    updated_at = NOW()
                WHERE job_id = %s
                  AND output_key IS NULL
                  AND (
                    state IN (%s, %s)
                    OR (state = %s AND processing_started_at < NOW() - (%s * INTERVAL '1 second'))
                  )
                RETURNING *
                """,
                (
                    JobState.PROCESSING,
                    job_id,
                    JobState.CREATED,
                    JobState.FAILED,
                    JobState.PROCESSING,
                    stale_after_seconds,
                ),
            )
            return fetch_one(cur)

    @staticmethod
    def complete_processing(
        job_id: str,
        attempt: int,
        output_key: str,
        preview_key: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        """
        Terminal success write: both keys and the state in one statement.

        Only the attempt that still holds the claim can commit; a superseded
        attempt gets None.
        """
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET state = %s,
                    output_key = %s,
                    preview_key = %s,
                    error_message = NULL,
                    updated_at = NOW()
                WHERE job_id = %s
                  AND state = %s
                  AND attempts = %s
                  AND output_key IS NULL
                RETURNING *
                """,
                (JobState.COMPLETED, output_key, preview_key, job_id, JobState.PROCESSING, attempt),
            )
            return fetch_one(cur)

    @staticmethod
    def fail_processing(job_id: str, attempt: int, error_message: str) -> Optional[Dict[str, Any]]:
        """Record a failed attempt, unless a newer attempt has taken the job. Keys are left untouched."""
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET state = %s,
                    error_message = %s,
                    updated_at = NOW()
                WHERE job_id = %s
                  AND state = %s
                  AND attempts = %s
                RETURNING *
                """,
                (JobState.FAILED, (error_message or "")[:1000], job_id, JobState.PROCESSING, attempt),
            )
            return fetch_one(cur)

    # ─────────────────────────────────────────────────────────────
    # Payment reconciliation
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def record_charge_intent(
        job_id: str,
        charge_intent_id: str,
        amount: int,
        currency: str,
    ) -> Optional[Dict[str, Any]]:
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET charge_intent_id = %s,
                    charge_status = %s,
                    charge_amount = %s,
                    charge_currency = %s,
                    updated_at = NOW()
                WHERE job_id = %s
                  AND purchased = FALSE
                RETURNING *
                """,
                (charge_intent_id, ChargeStatus.PENDING, amount, currency, job_id),
            )
            return fetch_one(cur)

    @staticmethod
    def mark_charge_failed(job_id: str, charge_intent_id: str) -> Optional[Dict[str, Any]]:
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET charge_status = %s,
                    updated_at = NOW()
                WHERE job_id = %s
                  AND charge_intent_id = %s
                  AND purchased = FALSE
                RETURNING *
                """,
                (ChargeStatus.FAILED, job_id, charge_intent_id),
            )
            return fetch_one(cur)

    @staticmethod
    def mark_purchased(
        job_id: str,
        charge_intent_id: str,
        amount: int,
        currency: str,
    ) -> Optional[Dict[str, Any]]:
        """Compare-and-set purchased. None means it was already true (or no job)."""
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET purchased = TRUE,
                    purchased_at = NOW(),
                    charge_intent_id = %s,
                    charge_status = %s,
                    charge_amount = %s,
                    charge_currency = %s,
                    updated_at = NOW()
                WHERE job_id = %s
                  AND purchased = FALSE
                RETURNING *
                """,
                (charge_intent_id, ChargeStatus.SUCCEEDED, amount, currency, job_id),
            )
            return fetch_one(cur)

    # ─────────────────────────────────────────────────────────────
    # Ownership
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def claim_unowned(job_ids: List[str], to_owner: str) -> List[str]:
        """Set owner on the given jobs that have none. Returns the claimed ids."""
        if not job_ids:
            return []
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET owner_id = %s, updated_at = NOW()
                WHERE job_id = ANY(%s)
                  AND owner_id IS NULL
                RETURNING job_id
                """,
                (to_owner, list(job_ids)),
            )
            return [row["job_id"] for row in fetch_all(cur)]

    @staticmethod
    def reassign_owner(from_owner: str, to_owner: str) -> int:
        """Move every job of from_owner to to_owner. Returns the row count."""
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET owner_id = %s, updated_at = NOW()
                WHERE owner_id = %s
                """,
                (to_owner, from_owner),
            )
            return cur.rowcount

    # ─────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def format_job(job: Dict[str, Any]) -> Dict[str, Any]:
        """Format job for API response (no storage URLs)."""
        def _iso(value):
            return value.isoformat() if hasattr(value, "isoformat") else value

        return {
            "job_id": job["job_id"],
            "owner_id": job.get("owner_id"),
            "state": job["state"],
            "error_message": job.get("error_message"),
            "attempts": job.get("attempts", 0),
            "has_output": bool(job.get("output_key")),
            "has_preview": bool(job.get("preview_key")),
            "purchased": bool(job.get("purchased")),
            "charge_status": job.get("charge_status"),
            "created_at": _iso(job.get("created_at")),
            "updated_at": _iso(job.get("updated_at")),
            "purchased_at": _iso(job.get("purchased_at")),
        }
