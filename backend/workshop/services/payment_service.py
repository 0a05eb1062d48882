# Overview: Payment ledger for job cards: payments, refunds, balance due and hosted checkout.

"""
Payment Ledger

DESIGN PRINCIPLES:
- Many payments per job card (advance, partial, full).
- Balance due is derived on demand, never stored:
      balance = grand_total - paid + refunded
  where paid counts non-refund payments that completed (including ones later
  marked refunded) and refunded counts completed refund rows. Pending and
  failed payments never count.
- A refund is a new Payment row; the original only flips to "refunded".
  Both writes happen in one unit of work.
- Hosted checkout tokens are opaque, stored hashed, and expire. Callback
  verification fails closed on expiry, order mismatch or bad signature.
- Completing a pending payment re-checks balance due, so several pending
  payments can never jointly overpay a job.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import case, func

from ..errors import Expired, InvalidState, NotFound, OutOfRange, SignatureInvalid
from ..extensions import db
from ..models import JobCard, Payment
from ..models.jobs import STATUS_CANCELLED
from ..models.payments import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_METHODS,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_TYPES,
)
from ..time_utils import to_utc_z, utcnow
from ..validation import ValidationError, optional_str, parse_cents, require_choice
from . import document_service, gateway_service, notification_service
from .billing_service import format_amount
from .concurrency import commit_unit, lock_for_update, run_with_retry


PAYMENT_STATUS_UNPAID = "UNPAID"
PAYMENT_STATUS_PARTIAL = "PARTIAL"
PAYMENT_STATUS_PAID = "PAID"
PAYMENT_STATUS_OVERPAID = "OVERPAID"

GATEWAY_NAME = "razorpay"


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _get_job(job_id: int, *, lock: bool = False) -> JobCard:
    query = db.session.query(JobCard).filter_by(id=job_id)
    if lock:
        query = lock_for_update(query)
    job = query.first()
    if job is None:
        raise NotFound("Job card not found", {"job_card_id": job_id})
    return job


def _get_payment(payment_id: int, *, lock: bool = False) -> Payment:
    query = db.session.query(Payment).filter_by(id=payment_id)
    if lock:
        query = lock_for_update(query)
    payment = query.first()
    if payment is None:
        raise NotFound("Payment not found", {"payment_id": payment_id})
    return payment


def _touch(job: JobCard) -> None:
    # bumps version_id so concurrent payment writers on one job conflict and retry
    job.updated_at = utcnow()


def delivery_tolerance_cents() -> int:
    return current_app.config.get("DELIVERY_BALANCE_TOLERANCE_CENTS", 1)


# =============================================================================
# BALANCE
# =============================================================================

def _paid_and_refunded(job_id: int) -> tuple[int, int]:
    is_refund = Payment.payment_type == "refund"
    paid, refunded = (
        db.session.query(
            func.coalesce(
                func.sum(
                    case(
                        (
                            (~is_refund) & Payment.status.in_((PAYMENT_COMPLETED, PAYMENT_REFUNDED)),
                            Payment.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
            func.coalesce(
                func.sum(
                    case(
                        (is_refund & (Payment.status == PAYMENT_COMPLETED), Payment.amount_cents),
                        else_=0,
                    )
                ),
                0,
            ),
        )
        .filter(Payment.job_card_id == job_id)
        .one()
    )
    return int(paid), int(refunded)


def balance_due_for(job: JobCard) -> int:
    paid, refunded = _paid_and_refunded(job.id)
    return job.grand_total_cents - paid + refunded


def balance_due(job_id: int) -> int:
    """Grand total minus net completed payments, in paise. Negative when overpaid."""
    return balance_due_for(_get_job(job_id))


def _ensure_within_balance(job: JobCard, amount_cents: int) -> int:
    """Raise OutOfRange when completing `amount_cents` would overpay the job. Returns the balance."""
    balance = balance_due_for(job)
    if amount_cents > balance:
        raise OutOfRange(
            f"Payment exceeds balance due. Balance due: {format_amount(max(balance, 0))}",
            {"amount_cents": amount_cents, "balance_due_cents": balance},
        )
    return balance


def payment_summary(job_id: int) -> dict:
    job = _get_job(job_id)
    paid, refunded = _paid_and_refunded(job.id)
    net_paid = paid - refunded
    balance = job.grand_total_cents - net_paid
    tolerance = delivery_tolerance_cents()

    if balance < 0:
        status = PAYMENT_STATUS_OVERPAID
    elif balance <= tolerance:
        status = PAYMENT_STATUS_PAID
    elif net_paid <= 0:
        status = PAYMENT_STATUS_UNPAID
    else:
        status = PAYMENT_STATUS_PARTIAL

    completed_count = (
        db.session.query(func.count(Payment.id))
        .filter(Payment.job_card_id == job.id, Payment.status == PAYMENT_COMPLETED)
        .scalar()
    )
    return {
        "job_card_id": job.id,
        "grand_total_cents": job.grand_total_cents,
        "paid_cents": paid,
        "refunded_cents": refunded,
        "net_paid_cents": net_paid,
        "balance_due_cents": balance,
        "payment_status": status,
        "completed_payments": int(completed_count or 0),
    }


def list_job_payments(job_id: int) -> list[Payment]:
    _get_job(job_id)
    return (
        db.session.query(Payment)
        .filter(Payment.job_card_id == job_id)
        .order_by(Payment.id)
        .all()
    )


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def record_payment(
    *,
    job_id: int,
    amount_cents: int,
    payment_type: str,
    payment_method: str,
    user_id: int | None = None,
    status: str = PAYMENT_COMPLETED,
    transaction_id: str | None = None,
    notes: str | None = None,
) -> Payment:
    """
    Record a payment against a job card.

    Rules:
    - Non-refund amounts may not exceed the current balance due (OutOfRange).
    - A refund-typed payment may not exceed what has been paid net.
    - "pending" is only honoured for non-refund payments; refunds are always
      recorded completed.
    - Cancelled jobs accept no payments (InvalidState).
    """
    amount_cents = parse_cents(amount_cents, "amount_cents", positive=True)
    payment_type = require_choice(payment_type, "payment_type", PAYMENT_TYPES)
    payment_method = require_choice(payment_method, "payment_method", PAYMENT_METHODS)
    status = require_choice(status, "status", (PAYMENT_PENDING, PAYMENT_COMPLETED))
    transaction_id = optional_str(transaction_id, "transaction_id", max_length=128)
    notes = optional_str(notes, "notes", max_length=500)
    if payment_type == "refund":
        status = PAYMENT_COMPLETED

    def _op() -> Payment:
        job = _get_job(job_id, lock=True)
        if job.status == STATUS_CANCELLED:
            raise InvalidState("Cannot record payment for a cancelled job", {"job_card_id": job.id})

        paid, refunded = _paid_and_refunded(job.id)
        balance = job.grand_total_cents - paid + refunded
        if payment_type != "refund" and amount_cents > balance:
            raise OutOfRange(
                f"Payment exceeds balance due. Balance due: {format_amount(max(balance, 0))}",
                {"amount_cents": amount_cents, "balance_due_cents": balance},
            )
        if payment_type == "refund" and amount_cents > paid - refunded:
            raise OutOfRange(
                "Refund exceeds net amount paid",
                {"amount_cents": amount_cents, "net_paid_cents": paid - refunded},
            )

        payment = Payment(
            payment_number=document_service.next_document_number(document_service.SCOPE_PAYMENT, "PAY"),
            job_card_id=job.id,
            customer_user_id=job.customer_user_id,
            amount_cents=amount_cents,
            payment_type=payment_type,
            payment_method=payment_method,
            status=status,
            transaction_id=transaction_id,
            received_by_user_id=user_id,
            notes=notes,
        )
        db.session.add(payment)
        _touch(job)
        db.session.flush()

        if status == PAYMENT_COMPLETED:
            _queue_payment_notification(job, payment)

        commit_unit()
        return payment

    return run_with_retry(_op)


def _queue_payment_notification(job: JobCard, payment: Payment) -> None:
    notification_service.enqueue(
        notification_service.user_ref(job.customer_user_id),
        "payment_refunded" if payment.is_refund else "payment_received",
        {
            "job_number": job.job_number,
            "payment_number": payment.payment_number,
            "amount": format_amount(payment.amount_cents),
        },
    )


def update_payment_status(
    payment_id: int,
    new_status: str,
    *,
    user_id: int | None = None,
    transaction_id: str | None = None,
) -> Payment:
    """Settle a pending payment: pending -> completed | failed."""
    new_status = require_choice(new_status, "status", (PAYMENT_COMPLETED, PAYMENT_FAILED))
    transaction_id = optional_str(transaction_id, "transaction_id", max_length=128)

    def _op() -> Payment:
        payment = _get_payment(payment_id, lock=True)
        if payment.status != PAYMENT_PENDING:
            raise InvalidState(
                f"Only pending payments can be settled (status: {payment.status})",
                {"payment_id": payment.id, "status": payment.status},
            )
        job = None
        if new_status == PAYMENT_COMPLETED:
            # checked before the status write so autoflush cannot count this payment
            job = _get_job(payment.job_card_id, lock=True)
            _ensure_within_balance(job, payment.amount_cents)

        payment.status = new_status
        if transaction_id:
            payment.transaction_id = transaction_id
        if user_id and not payment.received_by_user_id:
            payment.received_by_user_id = user_id
        payment.checkout_token_hash = None
        payment.checkout_expires_at = None
        if job is not None:
            _touch(job)
            _queue_payment_notification(job, payment)
        commit_unit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# REFUNDS
# =============================================================================

def refund_payment(
    payment_id: int,
    amount_cents: int,
    *,
    reason: str | None = None,
    user_id: int | None = None,
) -> Payment:
    """
    Refund (part of) a completed payment.

    Creates a new completed refund row and flips the original to "refunded"
    in one transaction. Over-limit refunds are rejected, never clamped.
    """
    amount_cents = parse_cents(amount_cents, "amount_cents", positive=True)
    reason = optional_str(reason, "reason", max_length=255)

    def _op() -> Payment:
        original = _get_payment(payment_id, lock=True)
        if original.is_refund:
            raise InvalidState("A refund cannot be refunded", {"payment_id": original.id})
        if original.status != PAYMENT_COMPLETED:
            raise InvalidState(
                f"Only completed payments can be refunded (status: {original.status})",
                {"payment_id": original.id, "status": original.status},
            )
        if amount_cents > original.amount_cents:
            raise OutOfRange(
                "Refund amount exceeds original payment amount",
                {"amount_cents": amount_cents, "original_amount_cents": original.amount_cents},
            )

        job = _get_job(original.job_card_id, lock=True)
        now = utcnow()
        refund = Payment(
            payment_number=document_service.next_document_number(document_service.SCOPE_PAYMENT, "PAY"),
            job_card_id=original.job_card_id,
            customer_user_id=original.customer_user_id,
            amount_cents=amount_cents,
            payment_type="refund",
            payment_method=original.payment_method,
            status=PAYMENT_COMPLETED,
            received_by_user_id=user_id,
            refund_of_payment_id=original.id,
            notes=f"Refund for payment {original.payment_number}",
            refund_reason=reason,
        )
        db.session.add(refund)

        original.status = PAYMENT_REFUNDED
        original.refunded_amount_cents = amount_cents
        original.refunded_at = now
        original.refund_reason = reason
        original.refunded_by_user_id = user_id
        _touch(job)
        db.session.flush()

        _queue_payment_notification(job, refund)
        commit_unit()
        return refund

    return run_with_retry(_op)


# =============================================================================
# HOSTED CHECKOUT
# =============================================================================

def create_checkout_order(payment_id: int, *, client: gateway_service.GatewayClient | None = None) -> dict:
    """
    Open a gateway order for a pending payment and issue a checkout token.

    The plaintext token is returned once; only its hash is stored.
    """
    client = client or gateway_service.get_client()
    ttl = timedelta(minutes=current_app.config.get("CHECKOUT_TOKEN_TTL_MINUTES", 30))

    def _op() -> dict:
        payment = _get_payment(payment_id, lock=True)
        if payment.status != PAYMENT_PENDING or payment.is_refund:
            raise InvalidState(
                "Checkout is only available for pending payments",
                {"payment_id": payment.id, "status": payment.status},
            )
        job = _get_job(payment.job_card_id)
        _ensure_within_balance(job, payment.amount_cents)

        order = client.create_order(
            payment.amount_cents,
            receipt=payment.payment_number,
            notes={"job_number": job.job_number, "payment_number": payment.payment_number},
        )
        token = secrets.token_hex(24)
        expires_at = utcnow() + ttl

        payment.gateway = GATEWAY_NAME
        payment.gateway_order_id = order["id"]
        payment.checkout_token_hash = _hash_token(token)
        payment.checkout_expires_at = expires_at
        db.session.commit()

        return {
            "payment": payment.to_dict(),
            "checkout_token": token,
            "expires_at": to_utc_z(expires_at),
            "order": {
                "id": order["id"],
                "amount": payment.amount_cents,
                "currency": "INR",
                "key_id": client.key_id,
            },
        }

    return run_with_retry(_op)


def verify_checkout(
    *,
    token: str,
    order_id: str,
    gateway_payment_id: str,
    signature: str,
    now: datetime | None = None,
    client: gateway_service.GatewayClient | None = None,
) -> Payment:
    """
    Reconcile a gateway callback.

    Order of checks: token known and pending (NotFound), not expired
    (Expired, even if the gateway captured money), order id matches, HMAC
    signature matches (SignatureInvalid), amount still within balance due
    (OutOfRange; the payment stays pending for manual reconciliation). Only
    then is the payment completed.
    """
    if not token or not isinstance(token, str):
        raise ValidationError("token is required", {"field": "token"})
    client = client or gateway_service.get_client()
    now = now or utcnow()

    def _op() -> Payment:
        payment = lock_for_update(
            db.session.query(Payment).filter_by(checkout_token_hash=_hash_token(token))
        ).first()
        if payment is None or payment.status != PAYMENT_PENDING:
            raise NotFound("Checkout session not found")

        if payment.checkout_expires_at is None or now > payment.checkout_expires_at:
            current_app.logger.warning(
                "Expired checkout verification for payment %s (order %s)",
                payment.payment_number, order_id,
            )
            raise Expired(
                "Checkout session expired; payment requires manual reconciliation",
                {
                    "payment_number": payment.payment_number,
                    "expired_at": to_utc_z(payment.checkout_expires_at),
                },
            )

        if not order_id or order_id != payment.gateway_order_id:
            raise SignatureInvalid("Order does not match checkout session", {"payment_number": payment.payment_number})
        if not client.verify_signature(order_id, gateway_payment_id, signature):
            current_app.logger.warning("Invalid gateway signature for payment %s", payment.payment_number)
            raise SignatureInvalid("Payment signature verification failed", {"payment_number": payment.payment_number})

        job = _get_job(payment.job_card_id, lock=True)
        balance = balance_due_for(job)
        if payment.amount_cents > balance:
            current_app.logger.warning(
                "Verified checkout for payment %s exceeds balance due %s; left pending",
                payment.payment_number, balance,
            )
            raise OutOfRange(
                "Payment exceeds balance due; payment requires manual reconciliation",
                {
                    "payment_number": payment.payment_number,
                    "amount_cents": payment.amount_cents,
                    "balance_due_cents": balance,
                },
            )

        payment.status = PAYMENT_COMPLETED
        payment.transaction_id = gateway_payment_id
        payment.gateway_signature = signature
        payment.checkout_token_hash = None
        payment.checkout_expires_at = None
        _touch(job)
        _queue_payment_notification(job, payment)
        commit_unit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# REPORTING
# =============================================================================

def collection_summary(date_from: datetime | None = None, date_to: datetime | None = None) -> dict:
    """
    Money collected per payment method in a window.

    Completed and later-refunded payments count as collected; completed refund
    rows are subtracted.
    """
    q = db.session.query(Payment).filter(
        Payment.status.in_((PAYMENT_COMPLETED, PAYMENT_REFUNDED))
    )
    if date_from is not None:
        q = q.filter(Payment.created_at >= date_from)
    if date_to is not None:
        q = q.filter(Payment.created_at <= date_to)

    by_method: dict[str, dict] = {}
    total = 0
    for payment in q.order_by(Payment.id).all():
        if payment.is_refund and payment.status != PAYMENT_COMPLETED:
            continue
        signed = -payment.amount_cents if payment.is_refund else payment.amount_cents
        bucket = by_method.setdefault(payment.payment_method, {"amount_cents": 0, "count": 0})
        bucket["amount_cents"] += signed
        bucket["count"] += 1
        total += signed

    return {"by_method": by_method, "total_cents": total}
