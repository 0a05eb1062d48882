from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


STATUS_CREATED = "created"
STATUS_INSPECTION = "inspection"
STATUS_AWAITING_APPROVAL = "awaiting-approval"
STATUS_APPROVED = "approved"
STATUS_IN_PROGRESS = "in-progress"
STATUS_QUALITY_CHECK = "quality-check"
STATUS_READY = "ready"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"

JOB_STATUSES = (
    STATUS_CREATED,
    STATUS_INSPECTION,
    STATUS_AWAITING_APPROVAL,
    STATUS_APPROVED,
    STATUS_IN_PROGRESS,
    STATUS_QUALITY_CHECK,
    STATUS_READY,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES = (STATUS_DELIVERED, STATUS_CANCELLED)

ITEM_TYPES = ("labour", "part", "consumable", "external")
STOCKED_ITEM_TYPES = ("part", "consumable")

FUEL_LEVELS = ("empty", "quarter", "half", "three-quarter", "full")


class JobCard(db.Model):
    """
    One vehicle-service engagement, from intake to delivery.

    The billing columns are a cached projection of job_items + discount +
    tax rate. They are rewritten by job_service in the same unit of work as
    any item, discount or tax change and are never taken from a request.
    """
    __tablename__ = "job_cards"
    __table_args__ = (
        db.Index("ix_job_cards_status_created", "status", "created_at"),
        db.Index("ix_job_cards_customer", "customer_user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    job_number = db.Column(db.String(32), nullable=False, unique=True)

    customer_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    vehicle_id = db.Column(db.Integer, db.ForeignKey("vehicles.id"), nullable=False, index=True)
    vehicle_snapshot = db.Column(db.JSON, nullable=False, default=dict)

    odometer_reading = db.Column(db.Integer, nullable=True)
    fuel_level = db.Column(db.String(16), nullable=True)
    customer_complaints = db.Column(db.JSON, nullable=False, default=list)
    diagnostics = db.Column(db.Text, nullable=True)
    notes_internal = db.Column(db.Text, nullable=True)
    notes_customer = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(24), nullable=False, default=STATUS_CREATED)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_reason = db.Column(db.String(255), nullable=True)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=1800)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)

    invoice_number = db.Column(db.String(64), nullable=True)
    invoiced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    estimated_completion = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_completion = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    customer = db.relationship("User", foreign_keys=[customer_user_id])
    vehicle = db.relationship("Vehicle")
    items = db.relationship(
        "JobItem",
        back_populates="job",
        order_by="JobItem.id",
        cascade="all, delete-orphan",
    )
    status_history = db.relationship(
        "JobStatusHistory",
        back_populates="job",
        order_by="JobStatusHistory.id",
        cascade="all, delete-orphan",
    )
    mechanic_assignments = db.relationship(
        "JobMechanicAssignment",
        back_populates="job",
        order_by="JobMechanicAssignment.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<JobCard id={self.id} {self.job_number} status={self.status}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def assigned_mechanic_user_ids(self) -> list[int]:
        return [a.mechanic_user_id for a in self.mechanic_assignments]

    def unapproved_items(self) -> list["JobItem"]:
        return [i for i in self.items if not i.is_approved]

    def billing_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "discount_reason": self.discount_reason,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_amount_cents": self.tax_amount_cents,
            "grand_total_cents": self.grand_total_cents,
        }

    def to_dict(self, include_history: bool = False) -> dict:
        data = {
            "id": self.id,
            "job_number": self.job_number,
            "customer_user_id": self.customer_user_id,
            "vehicle_id": self.vehicle_id,
            "vehicle_snapshot": self.vehicle_snapshot,
            "odometer_reading": self.odometer_reading,
            "fuel_level": self.fuel_level,
            "customer_complaints": self.customer_complaints,
            "diagnostics": self.diagnostics,
            "notes_customer": self.notes_customer,
            "notes_internal": self.notes_internal,
            "status": self.status,
            "items": [i.to_dict() for i in self.items],
            "billing": self.billing_dict(),
            "assigned_mechanic_user_ids": self.assigned_mechanic_user_ids,
            "invoice_number": self.invoice_number,
            "invoiced_at": to_utc_z(self.invoiced_at),
            "estimated_completion": to_utc_z(self.estimated_completion),
            "actual_completion": to_utc_z(self.actual_completion),
            "received_at": to_utc_z(self.received_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_history:
            data["status_history"] = [h.to_dict() for h in self.status_history]
        return data


class JobItem(db.Model):
    """Billable line on a job card (labour, part, consumable or external work)."""
    __tablename__ = "job_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_job_items_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_job_items_price_non_negative"),
        db.CheckConstraint("discount_cents >= 0", name="ck_job_items_discount_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    job_card_id = db.Column(db.Integer, db.ForeignKey("job_cards.id"), nullable=False, index=True)

    item_type = db.Column(db.String(16), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    inventory_item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=True, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    is_approved = db.Column(db.Boolean, nullable=False, default=False)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    job = db.relationship("JobCard", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_card_id": self.job_card_id,
            "item_type": self.item_type,
            "description": self.description,
            "inventory_item_id": self.inventory_item_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "is_approved": self.is_approved,
            "approved_at": to_utc_z(self.approved_at),
            "approved_by_user_id": self.approved_by_user_id,
        }


class JobStatusHistory(db.Model):
    """Append-only status audit trail; ordered by id."""
    __tablename__ = "job_status_history"
    __table_args__ = (
        db.Index("ix_job_status_history_job", "job_card_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    job_card_id = db.Column(db.Integer, db.ForeignKey("job_cards.id"), nullable=False)
    status = db.Column(db.String(24), nullable=False)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    note = db.Column(db.String(500), nullable=True)

    job = db.relationship("JobCard", back_populates="status_history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "changed_at": to_utc_z(self.changed_at),
            "changed_by_user_id": self.changed_by_user_id,
            "note": self.note,
        }


class JobMechanicAssignment(db.Model):
    __tablename__ = "job_mechanic_assignments"
    __table_args__ = (
        db.UniqueConstraint("job_card_id", "mechanic_user_id", name="uq_job_mechanic"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    job_card_id = db.Column(db.Integer, db.ForeignKey("job_cards.id"), nullable=False, index=True)
    mechanic_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    assigned_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    job = db.relationship("JobCard", back_populates="mechanic_assignments")
