# Overview: Flask API routes for job card payments, refunds and hosted checkout.

"""
Payment API Routes

SECURITY:
- Recording, settling and refunding payments: admin only
- Customers may read payments on their own job cards and start a hosted
  checkout for a pending payment on them
- /checkout/verify is the gateway callback; it is unauthenticated and relies
  on the opaque checkout token plus the gateway signature
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import DomainError, Forbidden, error_response
from ..extensions import db
from ..models import Payment
from ..models.auth import ROLE_ADMIN, ROLE_CUSTOMER
from ..services import job_service, payment_service
from ..validation import optional_datetime, optional_str, require_fields, require_payload


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _ensure_customer_owns(job_id: int) -> None:
    job = job_service.get_job(job_id)
    user = g.current_user
    if user.role == ROLE_CUSTOMER and job.customer_user_id != user.id:
        raise Forbidden("You do not have access to this job card", {"job_card_id": job_id})


@payments_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def record_payment_route():
    """
    Record a payment.

    Request body:
    {
        "job_card_id": 12,
        "amount_cents": 50000,
        "payment_type": "advance" | "partial" | "full" | "refund",
        "payment_method": "cash" | "card" | "upi" | ...,
        "status": "completed" | "pending",    // optional, default completed
        "transaction_id": "optional",
        "notes": "optional"
    }

    Returns 400 OutOfRange when the amount exceeds the balance due.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("job_card_id", "amount_cents", "payment_type", "payment_method"))

        payment = payment_service.record_payment(
            job_id=data["job_card_id"],
            amount_cents=data["amount_cents"],
            payment_type=data["payment_type"],
            payment_method=data["payment_method"],
            user_id=g.current_user.id,
            status=data.get("status", payment_service.PAYMENT_COMPLETED),
            transaction_id=optional_str(data.get("transaction_id"), "transaction_id", max_length=128),
            notes=optional_str(data.get("notes"), "notes"),
        )
        summary = payment_service.payment_summary(payment.job_card_id)
        return jsonify({"payment": payment.to_dict(), "summary": summary}), 201

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/jobcards/<int:job_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CUSTOMER)
def list_job_payments_route(job_id: int):
    try:
        _ensure_customer_owns(job_id)
        payments = payment_service.list_job_payments(job_id)
        return jsonify({
            "payments": [p.to_dict() for p in payments],
            "summary": payment_service.payment_summary(job_id),
        }), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/jobcards/<int:job_id>/balance")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CUSTOMER)
def balance_route(job_id: int):
    try:
        _ensure_customer_owns(job_id)
        return jsonify({"job_card_id": job_id, "balance_due_cents": payment_service.balance_due(job_id)}), 200
    except DomainError as e:
        return error_response(e)


@payments_bp.patch("/<int:payment_id>/status")
@require_auth
@require_role(ROLE_ADMIN)
def update_status_route(payment_id: int):
    """Settle a pending payment. Request body: {"status": "completed" | "failed", "transaction_id": "optional"}"""
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("status",))
        payment = payment_service.update_payment_status(
            payment_id,
            data["status"],
            user_id=g.current_user.id,
            transaction_id=optional_str(data.get("transaction_id"), "transaction_id", max_length=128),
        )
        return jsonify({"payment": payment.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update payment status")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/refund")
@require_auth
@require_role(ROLE_ADMIN)
def refund_route(payment_id: int):
    """
    Refund a completed payment.

    Request body: {"amount_cents": 20000, "reason": "optional"}
    Returns the new refund row; the original flips to "refunded".
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("amount_cents",))
        refund = payment_service.refund_payment(
            payment_id,
            data["amount_cents"],
            reason=optional_str(data.get("reason"), "reason"),
            user_id=g.current_user.id,
        )
        return jsonify({
            "refund": refund.to_dict(),
            "summary": payment_service.payment_summary(refund.job_card_id),
        }), 201

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# HOSTED CHECKOUT
# =============================================================================

@payments_bp.post("/<int:payment_id>/checkout")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CUSTOMER)
def create_checkout_route(payment_id: int):
    """
    Create a gateway order for a pending payment.

    Returns the opaque checkout token (shown once) and the order details the
    client hands to the gateway widget.
    """
    try:
        payment = db.session.get(Payment, payment_id)
        if payment is not None:
            _ensure_customer_owns(payment.job_card_id)
        result = payment_service.create_checkout_order(payment_id)
        return jsonify(result), 201

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create checkout order")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/checkout/verify")
def verify_checkout_route():
    """
    Gateway callback.

    Request body:
    {
        "token": "<checkout token>",
        "order_id": "order_...",
        "payment_id": "pay_...",
        "signature": "<hex hmac>"
    }

    Returns 410 Expired, 400 SignatureInvalid or 404 NotFound on failure.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("token", "order_id", "payment_id", "signature"))
        payment = payment_service.verify_checkout(
            token=str(data["token"]),
            order_id=str(data["order_id"]),
            gateway_payment_id=str(data["payment_id"]),
            signature=str(data["signature"]),
        )
        return jsonify({"payment": payment.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify checkout")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/collections")
@require_auth
@require_role(ROLE_ADMIN)
def collections_route():
    """Collections per payment method. Query: date_from, date_to (ISO-8601, inclusive)."""
    try:
        summary = payment_service.collection_summary(
            optional_datetime(request.args.get("date_from"), "date_from"),
            optional_datetime(request.args.get("date_to"), "date_to"),
        )
        return jsonify(summary), 200
    except DomainError as e:
        return error_response(e)
