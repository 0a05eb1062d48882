from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


PAYMENT_TYPES = ("advance", "partial", "full", "refund")
PAYMENT_METHODS = ("cash", "card", "upi", "netbanking", "wallet", "cheque", "other")

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_REFUNDED)


class Payment(db.Model):
    """
    One money movement against a job card.

    A refund is its own row (payment_type="refund", refund_of_payment_id set);
    the refunded original only flips its status to "refunded" and records the
    refund details. The hosted-checkout token is stored hashed and is never
    serialized.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        db.Index("ix_payments_job_status", "job_card_id", "status"),
        db.Index("ix_payments_created", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_number = db.Column(db.String(32), nullable=False, unique=True)

    job_card_id = db.Column(db.Integer, db.ForeignKey("job_cards.id"), nullable=False)
    customer_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    amount_cents = db.Column(db.Integer, nullable=False)
    payment_type = db.Column(db.String(16), nullable=False)
    payment_method = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING)

    transaction_id = db.Column(db.String(128), nullable=True)
    gateway = db.Column(db.String(32), nullable=True)
    gateway_order_id = db.Column(db.String(128), nullable=True, index=True)
    gateway_signature = db.Column(db.String(255), nullable=True)

    checkout_token_hash = db.Column(db.String(64), nullable=True, unique=True)
    checkout_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    received_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    refund_of_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)
    refunded_amount_cents = db.Column(db.Integer, nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)
    refunded_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    job = db.relationship("JobCard", backref=db.backref("payments", lazy=True, order_by="Payment.id"))

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Payment {self.payment_number} {self.payment_type} {self.amount_cents} {self.status}>"

    @property
    def is_refund(self) -> bool:
        return self.payment_type == "refund"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_number": self.payment_number,
            "job_card_id": self.job_card_id,
            "customer_user_id": self.customer_user_id,
            "amount_cents": self.amount_cents,
            "payment_type": self.payment_type,
            "payment_method": self.payment_method,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "gateway": self.gateway,
            "gateway_order_id": self.gateway_order_id,
            "checkout_expires_at": to_utc_z(self.checkout_expires_at),
            "received_by_user_id": self.received_by_user_id,
            "notes": self.notes,
            "refund_of_payment_id": self.refund_of_payment_id,
            "refunded_amount_cents": self.refunded_amount_cents,
            "refunded_at": to_utc_z(self.refunded_at),
            "refund_reason": self.refund_reason,
            "refunded_by_user_id": self.refunded_by_user_id,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
