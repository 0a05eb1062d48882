# Overview: Job card engine: state machine, item approval, billing recompute, invoicing and delivery gate.

"""
Job Card Lifecycle

================================================================================
STATE MACHINE
================================================================================

    created -> inspection -> awaiting-approval -> approved -> in-progress
            -> quality-check -> ready -> delivered

    cancelled is reachable from every non-terminal state.
    delivered and cancelled are terminal: no item, billing or status change
    is accepted afterwards.

RULES:
1. Adding an item while in inspection or in-progress forces awaiting-approval.
2. Approving items requires awaiting-approval; once nothing is pending the
   job moves to approved on its own.
3. Leaving awaiting-approval (except to cancelled), or entering any status
   from approved onwards, requires every item to be approved.
4. delivered is only reachable from ready, and only while balance due is
   within the delivery tolerance (1 paisa by default).
5. Billing columns are recomputed from items in the same transaction as
   every item, discount or tax change.
6. Every status change appends a history row and queues a customer
   notification that is sent after commit.

AUTHORIZATION (actor comes from the identity provider):
- Mechanics may only change status on jobs they are assigned to, and only
  to inspection, in-progress, quality-check or ready.
- Customers may only approve items on their own jobs.
================================================================================
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..errors import (
    ApprovalRequired,
    Forbidden,
    InvalidState,
    InvalidTransition,
    NotFound,
    PaymentIncomplete,
)
from ..extensions import db
from ..models import InventoryItem, JobCard, JobItem, JobMechanicAssignment, JobStatusHistory, User, Vehicle
from ..models.auth import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_MECHANIC
from ..models.inventory import REF_JOBCARD
from ..models.jobs import (
    FUEL_LEVELS,
    ITEM_TYPES,
    JOB_STATUSES,
    STATUS_APPROVED,
    STATUS_AWAITING_APPROVAL,
    STATUS_CANCELLED,
    STATUS_CREATED,
    STATUS_DELIVERED,
    STATUS_IN_PROGRESS,
    STATUS_INSPECTION,
    STATUS_QUALITY_CHECK,
    STATUS_READY,
    STOCKED_ITEM_TYPES,
    TERMINAL_STATUSES,
)
from ..time_utils import utcnow
from ..validation import (
    ValidationError,
    optional_datetime,
    optional_str,
    parse_cents,
    parse_id_list,
    parse_int,
    parse_quantity,
    require_choice,
    require_str,
)
from . import document_service, notification_service, payment_service, stock_service
from .billing_service import BillingTotals, compute_billing, format_amount, line_total_cents
from .concurrency import commit_unit, lock_for_update, run_with_retry
from .ledger_service import LedgerReference


TRANSITIONS: dict[str, set[str]] = {
    STATUS_CREATED: {STATUS_INSPECTION, STATUS_AWAITING_APPROVAL, STATUS_CANCELLED},
    STATUS_INSPECTION: {STATUS_AWAITING_APPROVAL, STATUS_APPROVED, STATUS_IN_PROGRESS, STATUS_CANCELLED},
    STATUS_AWAITING_APPROVAL: {STATUS_APPROVED, STATUS_CANCELLED},
    STATUS_APPROVED: {STATUS_IN_PROGRESS, STATUS_AWAITING_APPROVAL, STATUS_CANCELLED},
    STATUS_IN_PROGRESS: {STATUS_QUALITY_CHECK, STATUS_READY, STATUS_AWAITING_APPROVAL, STATUS_CANCELLED},
    STATUS_QUALITY_CHECK: {STATUS_IN_PROGRESS, STATUS_READY, STATUS_CANCELLED},
    STATUS_READY: {STATUS_DELIVERED, STATUS_QUALITY_CHECK, STATUS_IN_PROGRESS, STATUS_CANCELLED},
    STATUS_DELIVERED: set(),
    STATUS_CANCELLED: set(),
}

# Entering any of these requires zero unapproved items
APPROVAL_GATED_STATUSES = {
    STATUS_APPROVED,
    STATUS_IN_PROGRESS,
    STATUS_QUALITY_CHECK,
    STATUS_READY,
    STATUS_DELIVERED,
}

MECHANIC_ALLOWED_STATUSES = {STATUS_INSPECTION, STATUS_IN_PROGRESS, STATUS_QUALITY_CHECK, STATUS_READY}

# Adding an item in these statuses sends the job back for customer approval
REAPPROVAL_STATUSES = {STATUS_INSPECTION, STATUS_IN_PROGRESS}

INVOICEABLE_STATUSES = {STATUS_APPROVED, STATUS_IN_PROGRESS, STATUS_QUALITY_CHECK, STATUS_READY}

MAX_TAX_RATE_BPS = 10_000


def can_transition(from_status: str, to_status: str) -> bool:
    """Structural check only; approval and payment gates are applied by change_status."""
    return to_status in TRANSITIONS.get(from_status, set())


# =============================================================================
# Internal helpers (caller's unit of work)
# =============================================================================

def _get_job(job_id: int, *, lock: bool = False) -> JobCard:
    query = db.session.query(JobCard).filter_by(id=job_id)
    if lock:
        query = lock_for_update(query)
    job = query.first()
    if job is None:
        raise NotFound("Job card not found", {"job_card_id": job_id})
    return job


def _get_actor(user_id: int | None) -> User | None:
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def _ensure_open(job: JobCard) -> None:
    if job.status in TERMINAL_STATUSES:
        raise InvalidTransition(
            f"Job card is {job.status}; no further changes allowed",
            {"job_card_id": job.id, "status": job.status},
        )


def _recompute(job: JobCard) -> BillingTotals:
    for item in job.items:
        item.total_cents = line_total_cents(item.quantity, item.unit_price_cents, item.discount_cents)
    totals = compute_billing(job.items, job.discount_cents, job.tax_rate_bps)
    job.subtotal_cents = totals.subtotal_cents
    job.discount_cents = totals.discount_cents
    job.tax_amount_cents = totals.tax_amount_cents
    job.grand_total_cents = totals.grand_total_cents
    return totals


def _set_status(job: JobCard, new_status: str, *, user_id: int | None, note: str | None = None) -> None:
    now = utcnow()
    job.status = new_status
    if new_status == STATUS_READY and job.actual_completion is None:
        job.actual_completion = now
    if new_status == STATUS_DELIVERED:
        job.delivered_at = now
        if job.actual_completion is None:
            job.actual_completion = now
    if new_status == STATUS_CANCELLED:
        job.cancelled_at = now

    job.status_history.append(
        JobStatusHistory(status=new_status, changed_at=now, changed_by_user_id=user_id, note=note)
    )

    notification_service.enqueue(
        notification_service.user_ref(job.customer_user_id),
        "job_ready" if new_status == STATUS_READY else "job_status_changed",
        {
            "job_number": job.job_number,
            "status": new_status,
            "vehicle_number": (job.vehicle_snapshot or {}).get("vehicle_number"),
        },
    )


def _unapproved_ids(job: JobCard) -> list[int]:
    return [i.id for i in job.unapproved_items()]


def _require_all_approved(job: JobCard, target: str) -> None:
    pending = _unapproved_ids(job)
    if pending:
        raise ApprovalRequired(
            f"All items must be approved before moving to {target}",
            {"job_card_id": job.id, "unapproved_item_ids": pending},
        )


def _authorize_status_change(job: JobCard, actor: User | None, new_status: str) -> None:
    if actor is None or actor.role == ROLE_ADMIN:
        return
    if actor.role == ROLE_MECHANIC:
        if actor.id not in job.assigned_mechanic_user_ids:
            raise Forbidden("You can only update job cards assigned to you", {"job_card_id": job.id})
        if new_status not in MECHANIC_ALLOWED_STATUSES:
            raise Forbidden(
                "Mechanics cannot set this status",
                {"status": new_status, "allowed": sorted(MECHANIC_ALLOWED_STATUSES)},
            )
        return
    raise Forbidden("Not allowed to change job status", {"job_card_id": job.id})


def _parse_item(raw, *, field: str = "item") -> dict:
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object", {"field": field})
    item_type = require_choice(raw.get("item_type", raw.get("type")), f"{field}.item_type", ITEM_TYPES)
    inventory_item_id = raw.get("inventory_item_id")
    if inventory_item_id is not None:
        inventory_item_id = parse_int(inventory_item_id, f"{field}.inventory_item_id", minimum=1)
        if item_type not in STOCKED_ITEM_TYPES:
            raise ValidationError(
                "Only part and consumable items can be linked to stock",
                {"field": f"{field}.inventory_item_id", "item_type": item_type},
            )
    unit_price = raw.get("unit_price_cents")
    return {
        "item_type": item_type,
        "description": optional_str(raw.get("description"), f"{field}.description", max_length=500),
        "inventory_item_id": inventory_item_id,
        "quantity": parse_quantity(raw.get("quantity", 1), f"{field}.quantity"),
        "unit_price_cents": None if unit_price is None else parse_cents(unit_price, f"{field}.unit_price_cents"),
        "discount_cents": parse_cents(raw.get("discount_cents", 0) or 0, f"{field}.discount_cents"),
    }


def _build_item(fields: dict) -> JobItem:
    description = fields["description"]
    unit_price = fields["unit_price_cents"]
    if fields["inventory_item_id"] is not None:
        stock_item = db.session.get(InventoryItem, fields["inventory_item_id"])
        if stock_item is None:
            raise NotFound("Inventory item not found", {"item_id": fields["inventory_item_id"]})
        description = description or stock_item.name
        if unit_price is None:
            unit_price = stock_item.selling_price_cents
    if not description:
        raise ValidationError("description is required", {"field": "description"})
    if unit_price is None:
        raise ValidationError("unit_price_cents is required", {"field": "unit_price_cents"})
    return JobItem(
        item_type=fields["item_type"],
        description=description,
        inventory_item_id=fields["inventory_item_id"],
        quantity=fields["quantity"],
        unit_price_cents=unit_price,
        discount_cents=fields["discount_cents"],
        total_cents=line_total_cents(fields["quantity"], unit_price, fields["discount_cents"]),
        is_approved=False,
    )


def _parse_tax_rate(value) -> int:
    return parse_int(value, "tax_rate_bps", minimum=0, maximum=MAX_TAX_RATE_BPS)


# =============================================================================
# Creation and details
# =============================================================================

def create_job(
    *,
    customer_user_id: int,
    vehicle_id: int,
    user_id: int | None = None,
    items: list | None = None,
    customer_complaints: list | None = None,
    odometer_reading=None,
    fuel_level: str | None = None,
    estimated_completion=None,
    notes_customer: str | None = None,
    notes_internal: str | None = None,
    discount_cents=0,
    discount_reason: str | None = None,
    tax_rate_bps=None,
    mechanic_user_ids: list | None = None,
) -> JobCard:
    """
    Open a job card for a customer's vehicle.

    The vehicle's facts are copied into vehicle_snapshot and never refreshed.
    Initial items start unapproved.
    """
    customer_user_id = parse_int(customer_user_id, "customer_user_id", minimum=1)
    vehicle_id = parse_int(vehicle_id, "vehicle_id", minimum=1)
    item_fields = [_parse_item(raw, field=f"items[{i}]") for i, raw in enumerate(items or [])]
    complaints = _parse_complaints(customer_complaints)
    if odometer_reading is not None:
        odometer_reading = parse_int(odometer_reading, "odometer_reading", minimum=0)
    if fuel_level is not None:
        fuel_level = require_choice(fuel_level, "fuel_level", FUEL_LEVELS)
    estimated_completion = optional_datetime(estimated_completion, "estimated_completion")
    discount_cents = parse_cents(discount_cents or 0, "discount_cents")
    if tax_rate_bps is None:
        tax_rate = current_app.config.get("DEFAULT_TAX_RATE_BPS", 1800)
    else:
        tax_rate = _parse_tax_rate(tax_rate_bps)
    mechanic_ids = parse_id_list(mechanic_user_ids, "mechanic_user_ids") if mechanic_user_ids else []

    def _op() -> JobCard:
        customer = db.session.get(User, customer_user_id)
        if customer is None or customer.role != ROLE_CUSTOMER:
            raise NotFound("Customer not found", {"customer_user_id": customer_user_id})
        if not customer.is_active:
            raise InvalidState("Customer account is inactive", {"customer_user_id": customer_user_id})
        vehicle = db.session.get(Vehicle, vehicle_id)
        if vehicle is None or not vehicle.is_active:
            raise NotFound("Vehicle not found", {"vehicle_id": vehicle_id})
        if vehicle.owner_user_id != customer.id:
            raise ValidationError(
                "Vehicle does not belong to customer",
                {"vehicle_id": vehicle_id, "customer_user_id": customer_user_id},
            )

        now = utcnow()
        job = JobCard(
            job_number=document_service.next_document_number(document_service.SCOPE_JOB, "JOB"),
            customer_user_id=customer.id,
            vehicle_id=vehicle.id,
            vehicle_snapshot=vehicle.snapshot(),
            odometer_reading=odometer_reading,
            fuel_level=fuel_level,
            customer_complaints=complaints,
            estimated_completion=estimated_completion,
            notes_customer=optional_str(notes_customer, "notes_customer"),
            notes_internal=optional_str(notes_internal, "notes_internal"),
            status=STATUS_CREATED,
            discount_cents=discount_cents,
            discount_reason=optional_str(discount_reason, "discount_reason", max_length=255),
            tax_rate_bps=tax_rate,
            received_at=now,
            created_by_user_id=user_id,
        )
        for fields in item_fields:
            job.items.append(_build_item(fields))
        job.status_history.append(
            JobStatusHistory(status=STATUS_CREATED, changed_at=now, changed_by_user_id=user_id, note="Job card created")
        )
        _recompute(job)
        db.session.add(job)
        db.session.flush()

        if mechanic_ids:
            _replace_mechanics(job, mechanic_ids, user_id=user_id)

        notification_service.enqueue(
            notification_service.user_ref(customer.id),
            "job_created",
            {"job_number": job.job_number, "vehicle_number": vehicle.vehicle_number},
        )
        return commit_unit(job)

    return run_with_retry(_op)


def _parse_complaints(value) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("customer_complaints must be a list of strings", {"field": "customer_complaints"})
    return [require_str(c, "customer_complaints", max_length=500) for c in value]


DETAIL_FIELDS = (
    "odometer_reading",
    "fuel_level",
    "customer_complaints",
    "diagnostics",
    "notes_internal",
    "notes_customer",
    "estimated_completion",
)


def update_details(job_id: int, changes: dict, *, user_id: int | None = None) -> JobCard:
    """Patch descriptive fields. Status, items and billing have their own operations."""
    unknown = sorted(set(changes) - set(DETAIL_FIELDS))
    if unknown:
        raise ValidationError(f"Fields not writable: {', '.join(unknown)}", {"fields": unknown})

    parsed: dict = {}
    if "odometer_reading" in changes:
        value = changes["odometer_reading"]
        parsed["odometer_reading"] = None if value is None else parse_int(value, "odometer_reading", minimum=0)
    if "fuel_level" in changes:
        value = changes["fuel_level"]
        parsed["fuel_level"] = None if value is None else require_choice(value, "fuel_level", FUEL_LEVELS)
    if "customer_complaints" in changes:
        parsed["customer_complaints"] = _parse_complaints(changes["customer_complaints"])
    for field in ("diagnostics", "notes_internal", "notes_customer"):
        if field in changes:
            parsed[field] = optional_str(changes[field], field)
    if "estimated_completion" in changes:
        parsed["estimated_completion"] = optional_datetime(changes["estimated_completion"], "estimated_completion")

    def _op() -> JobCard:
        job = _get_job(job_id, lock=True)
        _ensure_open(job)
        for field, value in parsed.items():
            setattr(job, field, value)
        return commit_unit(job)

    return run_with_retry(_op)


# =============================================================================
# Items and approval
# =============================================================================

def add_item(job_id: int, payload: dict, *, user_id: int | None = None) -> JobItem:
    fields = _parse_item(payload)

    def _op() -> JobItem:
        job = _get_job(job_id, lock=True)
        _ensure_open(job)
        if job.invoiced_at is not None and fields["inventory_item_id"] is not None:
            raise InvalidState(
                "Job already invoiced; stock-linked items cannot be added",
                {"job_card_id": job.id, "invoice_number": job.invoice_number},
            )
        item = _build_item(fields)
        job.items.append(item)
        _recompute(job)
        if job.status in REAPPROVAL_STATUSES:
            _set_status(job, STATUS_AWAITING_APPROVAL, user_id=user_id, note="New items added for approval")
        db.session.flush()
        return commit_unit(item)

    return run_with_retry(_op)


def remove_item(job_id: int, item_id: int, *, user_id: int | None = None) -> JobCard:
    def _op() -> JobCard:
        job = _get_job(job_id, lock=True)
        _ensure_open(job)
        item = next((i for i in job.items if i.id == item_id), None)
        if item is None:
            raise NotFound("Job item not found", {"job_card_id": job.id, "item_id": item_id})
        if job.invoiced_at is not None and item.inventory_item_id is not None:
            raise InvalidState(
                "Job already invoiced; stock-linked items cannot be removed",
                {"job_card_id": job.id, "item_id": item_id},
            )
        job.items.remove(item)
        _recompute(job)
        return commit_unit(job)

    return run_with_retry(_op)


def approve_items(job_id: int, item_ids, *, user_id: int | None = None) -> JobCard:
    """
    Approve pending items.

    Requires awaiting-approval. Ids must all belong to the job. Once no item
    is pending the job moves to approved.
    """
    ids = parse_id_list(item_ids, "item_ids")
    if not ids:
        raise ValidationError("item_ids must not be empty", {"field": "item_ids"})

    def _op() -> JobCard:
        job = _get_job(job_id, lock=True)
        _ensure_open(job)
        actor = _get_actor(user_id)
        if actor is not None and actor.role == ROLE_CUSTOMER and actor.id != job.customer_user_id:
            raise Forbidden("You can only approve items on your own job cards", {"job_card_id": job.id})
        if actor is not None and actor.role == ROLE_MECHANIC:
            raise Forbidden("Mechanics cannot approve items", {"job_card_id": job.id})
        if job.status != STATUS_AWAITING_APPROVAL:
            raise InvalidTransition(
                "Items can only be approved while the job is awaiting approval",
                {"job_card_id": job.id, "status": job.status},
            )

        by_id = {i.id: i for i in job.items}
        missing = [i for i in ids if i not in by_id]
        if missing:
            raise NotFound("Job items not found", {"job_card_id": job.id, "missing_item_ids": missing})

        now = utcnow()
        for item_id in ids:
            item = by_id[item_id]
            if not item.is_approved:
                item.is_approved = True
                item.approved_at = now
                item.approved_by_user_id = user_id
        _recompute(job)

        if not job.unapproved_items():
            _set_status(job, STATUS_APPROVED, user_id=user_id, note="All items approved by customer")
        return commit_unit(job)

    return run_with_retry(_op)


# =============================================================================
# Status changes
# =============================================================================

def change_status(
    job_id: int,
    new_status: str,
    *,
    user_id: int | None = None,
    note: str | None = None,
) -> JobCard:
    """
    Explicit status change with every gate applied, in this order:
    terminal, no-op, delivery-from-ready, pending approvals, transition
    table, payment settled (delivery only).
    """
    new_status = require_choice(new_status, "status", JOB_STATUSES)
    note = optional_str(note, "note", max_length=500)

    def _op() -> JobCard:
        job = _get_job(job_id, lock=True)
        _authorize_status_change(job, _get_actor(user_id), new_status)
        _ensure_open(job)

        if new_status == job.status:
            raise InvalidTransition(
                f"Job card is already {job.status}",
                {"job_card_id": job.id, "status": job.status},
            )
        if new_status == STATUS_DELIVERED and job.status != STATUS_READY:
            raise InvalidTransition(
                "Job card must be ready before it can be delivered",
                {"job_card_id": job.id, "status": job.status},
            )
        if job.status == STATUS_AWAITING_APPROVAL and new_status != STATUS_CANCELLED:
            _require_all_approved(job, new_status)
        if not can_transition(job.status, new_status):
            raise InvalidTransition(
                f"Cannot move job card from {job.status} to {new_status}",
                {
                    "job_card_id": job.id,
                    "status": job.status,
                    "requested": new_status,
                    "allowed": sorted(TRANSITIONS[job.status]),
                },
            )
        if new_status in APPROVAL_GATED_STATUSES:
            _require_all_approved(job, new_status)

        if new_status == STATUS_DELIVERED:
            # billing is current: every item/discount/tax write recomputes it
            balance = payment_service.balance_due_for(job)
            if balance > payment_service.delivery_tolerance_cents():
                raise PaymentIncomplete(
                    f"Cannot mark delivered until payment is completed. Balance due: ₹{format_amount(balance)}",
                    {"job_card_id": job.id, "balance_due_cents": balance},
                )

        # every unit still out on this job goes back, invoiced or not
        if new_status == STATUS_CANCELLED:
            _return_invoiced_stock(job, user_id=user_id)

        _set_status(job, new_status, user_id=user_id, note=note)
        return commit_unit(job)

    return run_with_retry(_op)


def cancel_job(job_id: int, *, user_id: int | None = None, reason: str | None = None) -> JobCard:
    return change_status(job_id, STATUS_CANCELLED, user_id=user_id, note=reason or "Job cancelled")


# =============================================================================
# Billing
# =============================================================================

def update_billing(
    job_id: int,
    *,
    discount_cents=None,
    discount_reason: str | None = None,
    tax_rate_bps=None,
    user_id: int | None = None,
) -> JobCard:
    """Override job-level discount and/or tax rate; totals are recomputed from items."""
    if discount_cents is not None:
        discount_cents = parse_cents(discount_cents, "discount_cents")
    if tax_rate_bps is not None:
        tax_rate_bps = _parse_tax_rate(tax_rate_bps)
    discount_reason = optional_str(discount_reason, "discount_reason", max_length=255)

    def _op() -> JobCard:
        job = _get_job(job_id, lock=True)
        _ensure_open(job)
        if discount_cents is not None:
            job.discount_cents = discount_cents
        if discount_reason is not None:
            job.discount_reason = discount_reason
        if tax_rate_bps is not None:
            job.tax_rate_bps = tax_rate_bps
        _recompute(job)
        return commit_unit(job)

    return run_with_retry(_op)


def preview_billing(job_id: int, *, only_approved: bool = True) -> BillingTotals:
    """Totals over approved items only (confirmed cost while approvals are pending)."""
    job = _get_job(job_id)
    return compute_billing(job.items, job.discount_cents, job.tax_rate_bps, only_approved=only_approved)


# =============================================================================
# Mechanics
# =============================================================================

def _replace_mechanics(job: JobCard, mechanic_ids: list[int], *, user_id: int | None) -> list[int]:
    if mechanic_ids:
        users = db.session.query(User).filter(User.id.in_(mechanic_ids)).all()
        valid = {u.id for u in users if u.role == ROLE_MECHANIC and u.is_active}
        invalid = [i for i in mechanic_ids if i not in valid]
        if invalid:
            raise ValidationError(
                "Some users are not active mechanics",
                {"invalid_user_ids": invalid},
            )

    current = {a.mechanic_user_id: a for a in job.mechanic_assignments}
    for mechanic_id, assignment in current.items():
        if mechanic_id not in mechanic_ids:
            job.mechanic_assignments.remove(assignment)

    added = []
    for mechanic_id in mechanic_ids:
        if mechanic_id in current:
            continue
        job.mechanic_assignments.append(
            JobMechanicAssignment(mechanic_user_id=mechanic_id, assigned_by_user_id=user_id)
        )
        added.append(mechanic_id)
        notification_service.enqueue(
            notification_service.user_ref(mechanic_id),
            "job_assigned",
            {
                "job_number": job.job_number,
                "vehicle_number": (job.vehicle_snapshot or {}).get("vehicle_number"),
            },
        )
    return added


def assign_mechanics(job_id: int, mechanic_user_ids, *, user_id: int | None = None) -> JobCard:
    """Replace the assigned mechanic set; newly assigned mechanics are notified."""
    ids = parse_id_list(mechanic_user_ids, "mechanic_user_ids")

    def _op() -> JobCard:
        job = _get_job(job_id, lock=True)
        _ensure_open(job)
        _replace_mechanics(job, ids, user_id=user_id)
        job.updated_at = utcnow()
        return commit_unit(job)

    return run_with_retry(_op)


# =============================================================================
# Invoicing (stock consumption)
# =============================================================================

def _stock_lines(job: JobCard) -> list[stock_service.StockLine]:
    return [
        stock_service.StockLine(item_id=i.inventory_item_id, quantity=i.quantity)
        for i in job.items
        if i.inventory_item_id is not None
    ]


def _return_invoiced_stock(job: JobCard, *, user_id: int | None) -> None:
    outstanding = stock_service.invoiced_quantities(REF_JOBCARD, job.id)
    if not outstanding:
        return
    lines = [stock_service.StockLine(item_id=k, quantity=v) for k, v in sorted(outstanding.items())]
    stock_service.return_from_invoice_in_unit(
        lines,
        LedgerReference(REF_JOBCARD, job.id, job.invoice_number),
        reason=f"Job card {job.job_number} cancelled",
        user_id=user_id,
    )


def invoice_job(
    job_id: int,
    *,
    user_id: int | None = None,
    invoice_number: str | None = None,
) -> tuple[JobCard, list[stock_service.StockChange]]:
    """
    Issue the invoice: consume every stock-linked part/consumable line.

    All-or-nothing: if any line lacks stock the whole invoice is rejected
    with BatchFailure and no stock moves.
    """
    invoice_number = optional_str(invoice_number, "invoice_number", max_length=64)

    def _op():
        job = _get_job(job_id, lock=True)
        _ensure_open(job)
        if job.invoiced_at is not None:
            raise InvalidState(
                "Job card already invoiced",
                {"job_card_id": job.id, "invoice_number": job.invoice_number},
            )
        if job.status not in INVOICEABLE_STATUSES:
            raise InvalidTransition(
                f"Job card cannot be invoiced while {job.status}",
                {"job_card_id": job.id, "status": job.status},
            )
        _require_all_approved(job, "invoicing")

        number = invoice_number or job.job_number
        lines = _stock_lines(job)
        changes = []
        if lines:
            changes = stock_service.deduct_for_invoice_in_unit(
                lines,
                LedgerReference(REF_JOBCARD, job.id, number),
                user_id=user_id,
            )
        job.invoice_number = number
        job.invoiced_at = utcnow()
        return commit_unit((job, changes))

    return run_with_retry(_op)


# =============================================================================
# Queries
# =============================================================================

def get_job(job_id: int) -> JobCard:
    return _get_job(job_id)


def status_history(job_id: int) -> list[JobStatusHistory]:
    return list(_get_job(job_id).status_history)


def job_summary(job_id: int) -> dict:
    job = _get_job(job_id)
    data = job.to_dict(include_history=True)
    data["payment_summary"] = payment_service.payment_summary(job.id)
    data["approved_billing"] = preview_billing(job.id).to_dict()
    return data


def list_mechanic_jobs(mechanic_user_id: int, *, include_closed: bool = False) -> list[JobCard]:
    q = (
        db.session.query(JobCard)
        .join(JobMechanicAssignment, JobMechanicAssignment.job_card_id == JobCard.id)
        .filter(JobMechanicAssignment.mechanic_user_id == mechanic_user_id)
    )
    if not include_closed:
        q = q.filter(JobCard.status.notin_(TERMINAL_STATUSES))
    return q.order_by(JobCard.created_at.desc(), JobCard.id.desc()).all()


def job_stats() -> dict:
    """Count of job cards per status plus the number still active."""
    rows = db.session.query(JobCard.status, func.count(JobCard.id)).group_by(JobCard.status).all()
    counts = {status: 0 for status in JOB_STATUSES}
    for status, count in rows:
        counts[status] = int(count)
    total_active = sum(v for k, v in counts.items() if k not in TERMINAL_STATUSES)
    return {"by_status": counts, "total_active": total_active, "total": sum(counts.values())}
