"""
Shared fixtures: in-memory stand-ins for the jobs table, object storage,
the image edit API and Stripe.

The fakes mirror the conditional semantics of the real SQL (claim only from
created/failed, commit output once, purchased flips once, claim only unowned)
under a lock, so concurrency tests exercise the same decisions the database makes.
"""

from __future__ import annotations

import io
import threading
import time
import uuid
from types import SimpleNamespace

import pytest
from PIL import Image

from animify.config import config
from animify.services import migration_service, payment_service, processing_service
from animify.services import storage_service
from animify.services.job_store import ChargeStatus, JobState, JobStore
from animify.services.migration_service import MigrationService
from animify.services.storage_service import StorageNotFoundError
from animify.services.transform_service import TransformResult


def make_image(width: int = 64, height: int = 48, color=(200, 120, 80), fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


# ─────────────────────────────────────────────────────────────
# Jobs table
# ─────────────────────────────────────────────────────────────

class FakeJobStore:
    format_job = staticmethod(JobStore.format_job)

    def __init__(self):
        self.jobs: dict[str, dict] = {}
        self._lock = threading.Lock()

    def seed(self, job_id: str, **fields) -> dict:
        job = {
            "job_id": job_id,
            "owner_id": None,
            "state": JobState.CREATED,
            "input_key": f"{job_id}.png",
            "input_content_type": "image/png",
            "output_key": None,
            "preview_key": None,
            "error_message": None,
            "attempts": 0,
            "processing_started_at": None,
            "purchased": False,
            "charge_intent_id": None,
            "charge_status": None,
            "charge_amount": None,
            "charge_currency": None,
            "purchased_at": None,
            "created_at": time.time(),
            "updated_at": time.time(),
        }
        job.update(fields)
        with self._lock:
            self.jobs[job_id] = job
        return dict(job)

    def _copy(self, job_id):
        job = self.jobs.get(job_id)
        return dict(job) if job else None

    def get(self, job_id):
        with self._lock:
            return self._copy(job_id)

    def get_by_charge_intent(self, charge_intent_id):
        with self._lock:
            for job in self.jobs.values():
                if job["charge_intent_id"] == charge_intent_id:
                    return dict(job)
        return None

    def list_for_owner(self, owner_id, limit=50, offset=0):
        with self._lock:
            owned = [dict(j) for j in self.jobs.values() if j["owner_id"] == owner_id]
        owned.sort(key=lambda j: j["created_at"], reverse=True)
        return owned[offset:offset + limit]

    def find_many(self, job_ids):
        with self._lock:
            return [
                {"job_id": i, "owner_id": self.jobs[i]["owner_id"]}
                for i in job_ids
                if i in self.jobs
            ]

    def insert_if_absent(self, job_id, input_key, input_content_type, owner_id=None):
        with self._lock:
            if job_id in self.jobs:
                return self._copy(job_id), False
        job = self.seed(
            job_id,
            input_key=input_key,
            input_content_type=input_content_type,
            owner_id=owner_id,
        )
        return job, True

    def claim_for_processing(self, job_id, stale_after_seconds):
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job["output_key"]:
                return None
            stale = (
                job["state"] == JobState.PROCESSING
                and job["processing_started_at"] is not None
                and job["processing_started_at"] < time.time() - stale_after_seconds
            )
            if job["state"] not in (JobState.CREATED, JobState.FAILED) and not stale:
                return None
            job.update(
                state=JobState.PROCESSING,
                processing_started_at=time.time(),
                attempts=job["attempts"] + 1,
            )
            return dict(job)

    def complete_processing(self, job_id, attempt, output_key, preview_key):
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job["state"] != JobState.PROCESSING or job["attempts"] != attempt or job["output_key"]:
                return None
            job.update(
                state=JobState.COMPLETED,
                output_key=output_key,
                preview_key=preview_key,
                error_message=None,
            )
            return dict(job)

    def fail_processing(self, job_id, attempt, error_message):
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job["state"] != JobState.PROCESSING or job["attempts"] != attempt:
                return None
            job.update(state=JobState.FAILED, error_message=error_message)
            return dict(job)

    def record_charge_intent(self, job_id, charge_intent_id, amount, currency):
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job["purchased"]:
                return None
            job.update(
                charge_intent_id=charge_intent_id,
                charge_status=ChargeStatus.PENDING,
                charge_amount=amount,
                charge_currency=currency,
            )
            return dict(job)

    def mark_charge_failed(self, job_id, charge_intent_id):
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job["purchased"] or job["charge_intent_id"] != charge_intent_id:
                return None
            job["charge_status"] = ChargeStatus.FAILED
            return dict(job)

    def mark_purchased(self, job_id, charge_intent_id, amount, currency):
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job["purchased"]:
                return None
            job.update(
                purchased=True,
                purchased_at=time.time(),
                charge_intent_id=charge_intent_id,
                charge_status=ChargeStatus.SUCCEEDED,
                charge_amount=amount,
                charge_currency=currency,
            )
            return dict(job)

    def claim_unowned(self, job_ids, to_owner):
        claimed = []
        with self._lock:
            for job_id in job_ids:
                job = self.jobs.get(job_id)
                if job and job["owner_id"] is None:
                    job["owner_id"] = to_owner
                    claimed.append(job_id)
        return claimed

    def reassign_owner(self, from_owner, to_owner):
        count = 0
        with self._lock:
            for job in self.jobs.values():
                if job["owner_id"] == from_owner:
                    job["owner_id"] = to_owner
                    count += 1
        return count


# ─────────────────────────────────────────────────────────────
# Object storage
# ─────────────────────────────────────────────────────────────

class FakeStorage:
    INPUT = storage_service.INPUT
    OUTPUT = storage_service.OUTPUT
    PREVIEW = storage_service.PREVIEW

    build_input_key = staticmethod(storage_service.build_input_key)
    build_output_key = staticmethod(storage_service.build_output_key)
    build_preview_key = staticmethod(storage_service.build_preview_key)
    build_public_url = staticmethod(storage_service.build_public_url)

    def __init__(self):
        self.blobs: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.uploads: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def put(self, kind, key, data, content_type="image/png"):
        self.blobs[(kind, key)] = (data, content_type)

    def upload_bytes(self, kind, key, data, content_type):
        with self._lock:
            self.blobs[(kind, key)] = (data, content_type)
            self.uploads.append((kind, key))
        return key

    def download_bytes(self, kind, key):
        if (kind, key) not in self.blobs:
            raise StorageNotFoundError(f"Object {key} not found in {kind} storage")
        return self.blobs[(kind, key)][0]

    def key_exists(self, kind, key):
        return (kind, key) in self.blobs

    def delete_key(self, kind, key):
        self.blobs.pop((kind, key), None)

    def locate_input(self, job_id):
        keys = sorted(k for (kind, k) in self.blobs if kind == self.INPUT and k.startswith(f"{job_id}."))
        if not keys:
            return None
        return {"key": keys[0], "content_type": self.blobs[(self.INPUT, keys[0])][1]}

    def presign_key(self, kind, key, expires_in=None):
        return f"https://signed.test/{kind}/{key}?expires={expires_in or config.PRESIGN_EXPIRY_SECONDS}"


# ─────────────────────────────────────────────────────────────
# Image edit API
# ─────────────────────────────────────────────────────────────

class FakeTransformer:
    """transform_image stand-in. Optionally blocks on a gate to hold a claim open."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0
        self.started = threading.Event()
        self.gate: threading.Event | None = None
        self.result = make_image(96, 64, color=(40, 160, 90))
        self._lock = threading.Lock()

    def transform_image(self, image_bytes, content_type=None):
        with self._lock:
            self.calls += 1
        gate = self.gate
        self.started.set()
        if gate is not None:
            gate.wait(timeout=10)
        if self.error is not None:
            raise self.error
        return TransformResult(data=self.result, content_type="image/png", size="1536x1024")


# ─────────────────────────────────────────────────────────────
# Stripe
# ─────────────────────────────────────────────────────────────

class FakeStripeError(Exception):
    pass


class FakeSignatureVerificationError(FakeStripeError):
    pass


class FakeStripe:
    """The slice of the stripe module the payment service uses."""

    StripeError = FakeStripeError
    SignatureVerificationError = FakeSignatureVerificationError

    def __init__(self, amount: int = 499, currency: str = "usd"):
        self.price = {"id": "price_test", "product": "prod_test", "unit_amount": amount, "currency": currency}
        self.intents: dict[str, dict] = {}
        self.events: dict[str, dict] = {}
        self.created = 0
        self.Price = SimpleNamespace(retrieve=self._retrieve_price)
        self.PaymentIntent = SimpleNamespace(create=self._create_intent, retrieve=self._retrieve_intent)
        self.Webhook = SimpleNamespace(construct_event=self._construct_event)

    def _retrieve_price(self, price_id):
        return dict(self.price)

    def _create_intent(self, amount, currency, metadata=None, **kwargs):
        self.created += 1
        intent_id = f"pi_{uuid.uuid4().hex[:12]}"
        self.intents[intent_id] = {
            "id": intent_id,
            "amount": amount,
            "currency": currency,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_test",
            "metadata": dict(metadata or {}),
        }
        return dict(self.intents[intent_id])

    def _retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise FakeStripeError(f"No such payment_intent: {intent_id}")
        return dict(self.intents[intent_id])

    def add_intent(self, intent_id, job_id, amount=None, status="succeeded", currency="usd"):
        self.intents[intent_id] = {
            "id": intent_id,
            "amount": self.price["unit_amount"] if amount is None else amount,
            "currency": currency,
            "status": status,
            "client_secret": f"{intent_id}_secret_test",
            "metadata": {"job_id": job_id},
        }
        return self.intents[intent_id]

    def sign_event(self, event_type, intent) -> str:
        signature = f"t=1,v1={uuid.uuid4().hex}"
        self.events[signature] = {"type": event_type, "data": {"object": dict(intent)}}
        return signature

    def _construct_event(self, payload, signature, secret):
        if signature not in self.events:
            raise FakeSignatureVerificationError("No signatures found matching the expected signature")
        return self.events[signature]


class FakePendingMarkers:
    """pending_migrations rows keyed by (from_owner, to_owner)."""

    def __init__(self):
        self.rows: dict[tuple[str, str], dict] = {}

    def record(self, from_owner, to_owner):
        self.rows.setdefault((from_owner, to_owner), {
            "from_owner": from_owner,
            "to_owner": to_owner,
            "attempts": 0,
            "last_error": None,
            "created_at": time.time(),
        })

    def has(self, from_owner, to_owner):
        return (from_owner, to_owner) in self.rows

    def list_for(self, to_owner):
        return [dict(r) for r in self.rows.values() if r["to_owner"] == to_owner]

    def clear(self, from_owner, to_owner):
        self.rows.pop((from_owner, to_owner), None)

    def note_failure(self, from_owner, to_owner, error):
        row = self.rows.get((from_owner, to_owner))
        if row:
            row["attempts"] += 1
            row["last_error"] = error


# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────

@pytest.fixture
def job_store(monkeypatch):
    store = FakeJobStore()
    monkeypatch.setattr(processing_service, "JobStore", store)
    monkeypatch.setattr(payment_service, "JobStore", store)
    monkeypatch.setattr(migration_service, "JobStore", store)
    return store


@pytest.fixture
def storage(monkeypatch):
    fake = FakeStorage()
    monkeypatch.setattr(processing_service, "storage", fake)
    monkeypatch.setattr(payment_service, "storage", fake)
    return fake


@pytest.fixture
def transformer(monkeypatch):
    fake = FakeTransformer()
    monkeypatch.setattr(processing_service, "transformer", fake)
    return fake


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(payment_service, "stripe", fake)
    monkeypatch.setattr(payment_service, "STRIPE_AVAILABLE", True)
    monkeypatch.setattr(config, "STRIPE_PRICE_ID", "price_test")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    return fake


@pytest.fixture
def pending_markers(monkeypatch):
    markers = FakePendingMarkers()
    monkeypatch.setattr(MigrationService, "record_pending", staticmethod(markers.record))
    monkeypatch.setattr(MigrationService, "has_pending", staticmethod(markers.has))
    monkeypatch.setattr(MigrationService, "list_pending_for", staticmethod(markers.list_for))
    monkeypatch.setattr(MigrationService, "clear_pending", staticmethod(markers.clear))
    monkeypatch.setattr(MigrationService, "note_pending_failure", staticmethod(markers.note_failure))
    return markers


@pytest.fixture
def completed_job(job_store, storage):
    """A processed, unpurchased job with output and preview in storage."""
    storage.put(storage.INPUT, "abc.png", make_image())
    storage.put(storage.OUTPUT, "abc_out.png", make_image(96, 64))
    storage.put(storage.PREVIEW, "abc.png", make_image(48, 32))
    return job_store.seed(
        "abc",
        state=JobState.COMPLETED,
        output_key="abc_out.png",
        preview_key="abc.png",
        attempts=1,
    )
