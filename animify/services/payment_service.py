"""
Payment Service - unlocks full-resolution results via Stripe PaymentIntents.

Flow:
1. create_charge_intent(job_id) -> client_secret for the payment form
2. User pays on the client
3. verify_and_unlock(job_id, charge_intent_id) (client redirect) and/or
   handle_webhook() (payment_intent.succeeded) flip purchased=true
4. get_unlocked_download(job_id) -> presigned URL of the output

Integrity:
- The price is re-read from Stripe on every call, never cached
- An intent unlocks a job only if it succeeded, its amount equals the current
  price and its metadata names that job
- purchased is compare-and-set; repeated verifies and webhooks are no-ops
"""

from typing import Optional, Dict, Any

import stripe

from animify.config import config
from animify.services import storage_service as storage
from animify.services.job_store import JobStore, ChargeStatus
from animify.services.processing_service import is_processed, preview_url, validate_job_id
from animify.utils import log_event
from animify.utils.error_handlers import (
    AppError,
    IntegrityViolationError,
    NotFoundError,
    UpstreamError,
    ValidationError,
    ACTION_FIX_INPUT,
)

stripe.api_key = config.STRIPE_SECRET_KEY
STRIPE_AVAILABLE = config.STRIPE_CONFIGURED

if STRIPE_AVAILABLE:
    print(f"[STRIPE] Stripe configured and ready (mode: {config.STRIPE_MODE})")
else:
    print("[STRIPE] Stripe not configured (missing STRIPE_SECRET_KEY or STRIPE_PRICE_ID)")

INTENT_REUSABLE_STATUS = "requires_payment_method"
INTENT_SUCCEEDED_STATUS = "succeeded"


class PaymentProcessorError(UpstreamError):
    code = "PAYMENT_PROVIDER_ERROR"


class PaymentNotConfiguredError(UpstreamError):
    code = "PAYMENTS_NOT_CONFIGURED"


class NotPurchasedError(AppError):
    status_code = 403
    code = "NOT_PURCHASED"
    action = ACTION_FIX_INPUT


class WebhookSignatureError(ValidationError):
    code = "INVALID_SIGNATURE"


class WebhookConfigError(AppError):
    status_code = 500
    code = "WEBHOOK_NOT_CONFIGURED"


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    try:
        return obj[name]
    except (KeyError, TypeError, AttributeError):
        return getattr(obj, name, default)


class PaymentService:
    """Charge intents, verification and unlock."""

    @staticmethod
    def _require_stripe() -> None:
        if not STRIPE_AVAILABLE:
            raise PaymentNotConfiguredError("Payments are not configured")

    # ─────────────────────────────────────────────────────────────
    # Price
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def get_current_price() -> Dict[str, Any]:
        """Fetch the unlock price from Stripe: {price_id, product_id, amount, currency}."""
        PaymentService._require_stripe()
        try:
            price = stripe.Price.retrieve(config.STRIPE_PRICE_ID)
        except stripe.StripeError as e:
            print(f"[PAYMENT] Failed to retrieve price {config.STRIPE_PRICE_ID}: {e}")
            raise PaymentProcessorError("Could not load the current price") from e

        amount = _field(price, "unit_amount")
        if not isinstance(amount, int) or amount <= 0:
            raise PaymentProcessorError(f"Price {config.STRIPE_PRICE_ID} has no usable unit_amount")

        product = _field(price, "product")
        product_id = product if isinstance(product, str) else _field(product, "id")
        return {
            "price_id": _field(price, "id") or config.STRIPE_PRICE_ID,
            "product_id": product_id,
            "amount": amount,
            "currency": _field(price, "currency") or "usd",
        }

    # ─────────────────────────────────────────────────────────────
    # Create intent
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def create_charge_intent(job_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create (or reuse) a PaymentIntent for unlocking a job.

        Raises:
            ValidationError: job missing, not processed yet, or already purchased
            PaymentProcessorError: Stripe call failed
        """
        validate_job_id(job_id)
        job = JobStore.get(job_id)
        if not job:
            raise ValidationError(f"Job {job_id} not found", code="JOB_NOT_FOUND")
        if not is_processed(job):
            raise ValidationError("Job has not finished processing", code="JOB_NOT_READY")
        if job.get("purchased"):
            raise ValidationError("Job is already unlocked", code="ALREADY_PURCHASED")

        price = PaymentService.get_current_price()

        reused = PaymentService._reusable_intent(job, price)
        if reused is not None:
            print(f"[PAYMENT] Reusing intent {_field(reused, 'id')} for job {job_id}")
            return PaymentService._intent_response(reused, reused=True)

        metadata = {
            "job_id": job_id,
            "owner_id": job.get("owner_id") or owner_id or "anonymous",
            "product_type": config.PRODUCT_TYPE,
            "price_id": price["price_id"],
            "product_id": price["product_id"] or "",
        }
        try:
            intent = stripe.PaymentIntent.create(
                amount=price["amount"],
                currency=price["currency"],
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                description=f"Unlock animation {job_id}",
            )
        except stripe.StripeError as e:
            print(f"[PAYMENT] PaymentIntent.create failed for job {job_id}: {e}")
            raise PaymentProcessorError("Could not create payment") from e

        intent_id = _field(intent, "id")
        updated = JobStore.record_charge_intent(job_id, intent_id, price["amount"], price["currency"])
        if updated is None:
            # Purchased between our read and this write
            raise ValidationError("Job is already unlocked", code="ALREADY_PURCHASED")

        print(f"[PAYMENT] Created intent {intent_id} for job {job_id}: {price['amount']} {price['currency']}")
        return PaymentService._intent_response(intent, reused=False)

    @staticmethod
    def _reusable_intent(job: Dict[str, Any], price: Dict[str, Any]) -> Optional[Any]:
        intent_id = job.get("charge_intent_id")
        if not intent_id or job.get("charge_status") != ChargeStatus.PENDING:
            return None
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as e:
            print(f"[PAYMENT] Could not reload pending intent {intent_id}, creating a new one: {e}")
            return None

        if (
            _field(intent, "status") == INTENT_REUSABLE_STATUS
            and _field(intent, "amount") == price["amount"]
            and _field(_field(intent, "metadata"), "job_id") == job["job_id"]
        ):
            return intent
        return None

    @staticmethod
    def _intent_response(intent: Any, reused: bool) -> Dict[str, Any]:
        return {
            "ok": True,
            "client_secret": _field(intent, "client_secret"),
            "charge_intent_id": _field(intent, "id"),
            "amount": _field(intent, "amount"),
            "currency": _field(intent, "currency"),
            "reused": reused,
        }

    # ─────────────────────────────────────────────────────────────
    # Verify & unlock
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def verify_and_unlock(job_id: str, charge_intent_id: str) -> Dict[str, Any]:
        """
        Check a PaymentIntent against the job and the current price, then unlock.

        Idempotent: a job already unlocked by this intent returns was_existing=True.
        """
        validate_job_id(job_id)
        if not charge_intent_id or not isinstance(charge_intent_id, str):
            raise ValidationError("charge_intent_id is required", code="MISSING_CHARGE_INTENT")

        job = JobStore.get(job_id)
        if not job:
            raise NotFoundError(f"Job {job_id} not found", code="JOB_NOT_FOUND")

        if job.get("purchased") and job.get("charge_intent_id") == charge_intent_id:
            print(f"[PAYMENT] Verify: job {job_id} already unlocked by {charge_intent_id} (idempotent)")
            return PaymentService._unlock_response(job, was_existing=True)

        PaymentService._require_stripe()
        try:
            intent = stripe.PaymentIntent.retrieve(charge_intent_id)
        except stripe.StripeError as e:
            print(f"[PAYMENT] Verify: failed to retrieve intent {charge_intent_id}: {e}")
            raise PaymentProcessorError("Could not load payment") from e

        return PaymentService._unlock_with_intent(job, intent, source="verify")

    @staticmethod
    def _unlock_with_intent(job: Dict[str, Any], intent: Any, source: str) -> Dict[str, Any]:
        """Shared by verify and webhook: integrity checks then compare-and-set."""
        job_id = job["job_id"]
        intent_id = _field(intent, "id")
        status = _field(intent, "status")
        amount = _field(intent, "amount")
        currency = _field(intent, "currency")
        intent_job_id = _field(_field(intent, "metadata"), "job_id")

        if status != INTENT_SUCCEEDED_STATUS:
            print(f"[PAYMENT] {source}: intent {intent_id} for job {job_id} is '{status}', not unlocking")
            raise ValidationError(f"Payment status is '{status}'", code="PAYMENT_NOT_COMPLETED")

        price = PaymentService.get_current_price()
        reasons = []
        if amount != price["amount"]:
            reasons.append(f"amount {amount} != price {price['amount']}")
        if intent_job_id != job_id:
            reasons.append(f"intent job {intent_job_id} != {job_id}")
        if reasons:
            print(f"[PAYMENT] SECURITY: {source} rejected intent {intent_id} for job {job_id}: {'; '.join(reasons)}")
            log_event("payment_integrity_violation", {
                "source": source,
                "job_id": job_id,
                "charge_intent_id": intent_id,
                "reasons": reasons,
            })
            raise IntegrityViolationError("Payment does not match this job", details={"reasons": reasons})

        updated = JobStore.mark_purchased(job_id, intent_id, amount, currency)
        if updated:
            print(f"[PAYMENT] {source}: job {job_id} unlocked by {intent_id}")
            return PaymentService._unlock_response(updated, was_existing=False)

        current = JobStore.get(job_id) or job
        print(f"[PAYMENT] {source}: job {job_id} already unlocked (idempotent)")
        return PaymentService._unlock_response(current, was_existing=True)

    @staticmethod
    def _unlock_response(job: Dict[str, Any], was_existing: bool) -> Dict[str, Any]:
        return {
            "ok": True,
            "job": JobStore.format_job(job),
            "was_existing": was_existing,
        }

    # ─────────────────────────────────────────────────────────────
    # Webhook
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def handle_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Process a Stripe webhook event.

        Raises WebhookConfigError / WebhookSignatureError before touching any
        state. Processing errors after verification are logged and returned as
        {"ok": False, ...} so the caller can still acknowledge the event.
        """
        if not config.STRIPE_WEBHOOK_SECRET:
            print("[PAYMENT] ERROR: STRIPE_WEBHOOK_SECRET not configured")
            raise WebhookConfigError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
        except stripe.SignatureVerificationError as e:
            print(f"[PAYMENT] Webhook signature verification failed: {e}")
            raise WebhookSignatureError("Invalid signature") from e
        except ValueError as e:
            print(f"[PAYMENT] Webhook payload parse error: {e}")
            raise WebhookSignatureError("Invalid payload") from e

        event_type = _field(event, "type", "unknown")
        intent = _field(_field(event, "data"), "object")
        print(f"[PAYMENT] Webhook received: {event_type}")

        try:
            if event_type == "payment_intent.succeeded":
                return PaymentService._handle_intent_succeeded(event_type, intent)
            if event_type == "payment_intent.payment_failed":
                return PaymentService._handle_intent_failed(event_type, intent)
        except Exception as e:
            print(f"[PAYMENT] Webhook {event_type} processing error: {type(e).__name__}: {e}")
            return {"ok": False, "event_type": event_type, "error": str(e)}

        return {
            "ok": True,
            "event_type": event_type,
            "message": f"Event type '{event_type}' acknowledged but not processed",
        }

    @staticmethod
    def _handle_intent_succeeded(event_type: str, intent: Any) -> Dict[str, Any]:
        job_id = _field(_field(intent, "metadata"), "job_id")
        if not job_id:
            print(f"[PAYMENT] Webhook: intent {_field(intent, 'id')} has no job_id metadata")
            return {"ok": False, "event_type": event_type, "error": "Missing job_id metadata"}

        job = JobStore.get(job_id)
        if not job:
            print(f"[PAYMENT] Webhook: job {job_id} for intent {_field(intent, 'id')} not found")
            return {"ok": False, "event_type": event_type, "error": "Job not found"}

        result = PaymentService._unlock_with_intent(job, intent, source="webhook")
        return {
            "ok": True,
            "event_type": event_type,
            "job_id": job_id,
            "was_existing": result["was_existing"],
            "message": "Job unlocked",
        }

    @staticmethod
    def _handle_intent_failed(event_type: str, intent: Any) -> Dict[str, Any]:
        intent_id = _field(intent, "id")
        job_id = _field(_field(intent, "metadata"), "job_id")
        error = _field(_field(intent, "last_payment_error"), "message")
        if not job_id and intent_id:
            job = JobStore.get_by_charge_intent(intent_id)
            job_id = job["job_id"] if job else None
        print(f"[PAYMENT] Webhook: payment failed for job {job_id} intent {intent_id}: {error}")
        if job_id:
            JobStore.mark_charge_failed(job_id, intent_id)
        return {"ok": True, "event_type": event_type, "job_id": job_id, "message": "Payment failure recorded"}

    # ─────────────────────────────────────────────────────────────
    # Unlock
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def get_unlocked_download(job_id: str) -> Dict[str, Any]:
        """
        Full-resolution URL for a purchased job.

        Raises:
            NotFoundError: job or its output missing
            NotPurchasedError: job not unlocked yet
        """
        validate_job_id(job_id)
        job = JobStore.get(job_id)
        if not job:
            raise NotFoundError(f"Job {job_id} not found", code="JOB_NOT_FOUND")
        if not job.get("output_key"):
            raise NotFoundError("Job has no output yet", code="OUTPUT_NOT_READY")
        if not job.get("purchased"):
            raise NotPurchasedError("Job has not been unlocked")
        if not storage.key_exists(storage.OUTPUT, job["output_key"]):
            print(f"[PAYMENT] Unlock: output {job['output_key']} for job {job_id} missing from storage")
            raise NotFoundError("Output file is missing", code="OUTPUT_MISSING")

        return {
            "ok": True,
            "job_id": job_id,
            "download_url": storage.presign_key(storage.OUTPUT, job["output_key"]),
            "expires_in": config.PRESIGN_EXPIRY_SECONDS,
            "preview_url": preview_url(job),
        }
