"""
/api/payment routes - one-time charge to unlock a processed job.

Handles:
- POST /api/payment/create-intent - Create (or reuse) a Stripe PaymentIntent
- POST /api/payment/verify - Verify a PaymentIntent and unlock the job
- POST /api/payment/webhook - Stripe webhook handler
"""

from flask import Blueprint, request, jsonify, g

from animify.middleware import no_cache
from animify.services.payment_service import PaymentService

bp = Blueprint("payment", __name__)


@bp.route("/create-intent", methods=["POST"])
@no_cache
def create_intent():
    """
    Request body:
    {
        "job_id": "abc",
        "owner_id": "..."   // optional
    }

    Response (200):
    {
        "ok": true,
        "client_secret": "pi_..._secret_...",
        "charge_intent_id": "pi_...",
        "amount": 499,
        "currency": "usd",
        "reused": false
    }
    """
    data = request.get_json(silent=True) or {}
    owner_id = data.get("owner_id") or getattr(g, "identity_id", None)
    result = PaymentService.create_charge_intent(data.get("job_id"), owner_id=owner_id)
    return jsonify(result)


@bp.route("/verify", methods=["POST"])
@no_cache
def verify():
    """
    Request body:
    {
        "job_id": "abc",
        "charge_intent_id": "pi_..."
    }
    """
    data = request.get_json(silent=True) or {}
    result = PaymentService.verify_and_unlock(data.get("job_id"), data.get("charge_intent_id"))
    return jsonify(result)


@bp.route("/webhook", methods=["POST"])
def stripe_webhook():
    """
    Handle Stripe webhook events.

    Raw body + Stripe-Signature header. 400 on a bad signature, 500 when the
    webhook secret is missing. Once verified, returns 200 even on processing
    errors so Stripe does not retry indefinitely.
    """
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature", "")

    result = PaymentService.handle_webhook(payload, signature)

    if result.get("ok"):
        return jsonify({
            "ok": True,
            "event_type": result.get("event_type"),
            "message": result.get("message"),
        })

    print(f"[PAYMENT] Webhook processing error: {result.get('error')}")
    return jsonify({
        "ok": False,
        "event_type": result.get("event_type"),
        "error": result.get("error"),
    })
