"""
Job card lifecycle tests.

Verifies:
- Creation snapshots the vehicle and records history
- Approval flow and automatic move to approved
- Transition table, approval gate and payment-gated delivery
- Mechanic and customer restrictions
- Invoicing consumes stock all-or-nothing; cancelling returns it
"""

import pytest

from workshop.errors import (
    ApprovalRequired,
    BatchFailure,
    Forbidden,
    InvalidState,
    InvalidTransition,
    NotFound,
    PaymentIncomplete,
)
from workshop.models import InventoryItem, JobCard, Vehicle
from workshop.models.inventory import REF_JOBCARD
from workshop.services import job_service, ledger_service, payment_service, stock_service
from workshop.services.ledger_service import LedgerReference
from workshop.time_utils import day_stamp
from workshop.validation import ValidationError


TWO_LINES = [
    {"item_type": "labour", "description": "Brake inspection", "quantity": 1, "unit_price_cents": 30000},
    {"item_type": "external", "description": "Wheel alignment", "quantity": 1, "unit_price_cents": 60000},
]


# =============================================================================
# CREATION
# =============================================================================


class TestCreateJob:

    def test_create_job(self, db_session, make_job, customer, sender):
        job = make_job(customer_complaints=["Brake noise"], fuel_level="half", odometer_reading=42000)

        assert job.job_number == f"JOB{day_stamp()}0001"
        assert job.status == "created"
        assert job.vehicle_snapshot["vehicle_number"] == "KA01AB1234"
        assert job.customer_complaints == ["Brake noise"]
        assert job.grand_total_cents == 21240
        assert [h.note for h in job.status_history] == ["Job card created"]
        assert all(not i.is_approved for i in job.items)
        assert sender.kinds() == ["job_created"]
        assert sender.sent[0][0] == f"user:{customer.id}"

    def test_default_tax_rate_from_config(self, db_session, make_job):
        job = make_job(tax_rate_bps=None, discount_cents=0)
        assert job.tax_rate_bps == 1800
        assert job.grand_total_cents == 23600

    def test_snapshot_does_not_follow_vehicle_edits(self, db_session, make_job, vehicle):
        job = make_job()
        db_session.get(Vehicle, vehicle.id).color = "Blue"
        db_session.commit()
        assert db_session.get(JobCard, job.id).vehicle_snapshot["color"] == "Red"

    def test_vehicle_must_belong_to_customer(self, db_session, admin, other_customer, vehicle):
        with pytest.raises(ValidationError):
            job_service.create_job(customer_user_id=other_customer.id, vehicle_id=vehicle.id, user_id=admin.id)

    def test_customer_must_be_a_customer(self, db_session, admin, mechanic, vehicle):
        with pytest.raises(NotFound):
            job_service.create_job(customer_user_id=mechanic.id, vehicle_id=vehicle.id, user_id=admin.id)

    def test_linked_item_defaults_from_stock(self, db_session, make_job, make_item):
        pads = make_item(opening_stock=5)
        job = make_job(items=[{"item_type": "part", "inventory_item_id": pads.id, "quantity": 1}])
        assert job.items[0].description == "Brake Pad Set"
        assert job.items[0].unit_price_cents == 120000

    def test_labour_cannot_link_stock(self, db_session, make_job, make_item):
        pads = make_item(opening_stock=5)
        with pytest.raises(ValidationError):
            make_job(items=[{"item_type": "labour", "inventory_item_id": pads.id, "unit_price_cents": 1}])

    def test_mechanics_assigned_on_create(self, db_session, make_job, mechanic, sender):
        job = make_job(mechanic_user_ids=[mechanic.id])
        assert job.assigned_mechanic_user_ids == [mechanic.id]
        assert "job_assigned" in sender.kinds()


# =============================================================================
# APPROVAL
# =============================================================================


class TestApproval:

    def test_partial_then_full_approval(self, db_session, make_job, customer):
        job = make_job(items=TWO_LINES)
        job_service.change_status(job.id, "awaiting-approval")
        first, second = [i.id for i in job.items]

        job = job_service.approve_items(job.id, [first], user_id=customer.id)
        assert job.status == "awaiting-approval"

        job = job_service.approve_items(job.id, [second], user_id=customer.id)
        assert job.status == "approved"
        assert job.status_history[-1].note == "All items approved by customer"
        assert job.items[1].approved_by_user_id == customer.id

    def test_approve_requires_awaiting_approval(self, db_session, make_job, admin):
        job = make_job()
        with pytest.raises(InvalidTransition):
            job_service.approve_items(job.id, [job.items[0].id], user_id=admin.id)

    def test_unknown_item_ids(self, db_session, make_job, admin):
        job = make_job()
        job_service.change_status(job.id, "awaiting-approval", user_id=admin.id)
        with pytest.raises(NotFound) as exc:
            job_service.approve_items(job.id, [999999], user_id=admin.id)
        assert exc.value.details["missing_item_ids"] == [999999]

    def test_customer_cannot_approve_other_customers_job(self, db_session, make_job, admin, other_customer):
        job = make_job()
        job_service.change_status(job.id, "awaiting-approval", user_id=admin.id)
        with pytest.raises(Forbidden):
            job_service.approve_items(job.id, [job.items[0].id], user_id=other_customer.id)

    def test_leaving_awaiting_approval_needs_all_items(self, db_session, make_job, admin):
        job = make_job(items=TWO_LINES)
        job_service.change_status(job.id, "awaiting-approval", user_id=admin.id)
        job_service.approve_items(job.id, [job.items[0].id], user_id=admin.id)

        with pytest.raises(ApprovalRequired) as exc:
            job_service.change_status(job.id, "approved", user_id=admin.id)
        assert exc.value.details["unapproved_item_ids"] == [job.items[1].id]

    def test_new_item_in_progress_needs_reapproval(self, ready_job, admin):
        job = ready_job()
        job_service.change_status(job.id, "in-progress", user_id=admin.id)

        item = job_service.add_item(
            job.id,
            {"item_type": "labour", "description": "Replace rotor", "unit_price_cents": 50000},
            user_id=admin.id,
        )
        job = job_service.get_job(job.id)
        assert job.status == "awaiting-approval"
        assert item.is_approved is False
        assert job.status_history[-1].note == "New items added for approval"
        assert job.grand_total_cents == 21240 + 59000

    def test_can_cancel_with_pending_approvals(self, db_session, make_job, admin):
        job = make_job()
        job_service.change_status(job.id, "awaiting-approval", user_id=admin.id)
        job = job_service.cancel_job(job.id, user_id=admin.id)
        assert job.status == "cancelled"
        assert job.cancelled_at is not None

    def test_preview_billing_counts_approved_only(self, db_session, make_job, admin):
        job = make_job(items=TWO_LINES, discount_cents=0)
        job_service.change_status(job.id, "awaiting-approval", user_id=admin.id)
        job_service.approve_items(job.id, [job.items[0].id], user_id=admin.id)

        preview = job_service.preview_billing(job.id)
        assert preview.subtotal_cents == 30000
        assert job_service.get_job(job.id).subtotal_cents == 90000


# =============================================================================
# TRANSITIONS / DELIVERY
# =============================================================================


class TestTransitions:

    def test_transition_table_enforced(self, db_session, make_job, admin):
        job = make_job()
        with pytest.raises(InvalidTransition):
            job_service.change_status(job.id, "ready", user_id=admin.id)

    def test_same_status_rejected(self, db_session, make_job, admin):
        job = make_job()
        with pytest.raises(InvalidTransition):
            job_service.change_status(job.id, "created", user_id=admin.id)

    def test_delivery_only_from_ready(self, ready_job, admin):
        job = ready_job()
        job_service.change_status(job.id, "quality-check", user_id=admin.id)
        with pytest.raises(InvalidTransition):
            job_service.change_status(job.id, "delivered", user_id=admin.id)

    def test_delivery_blocked_until_paid(self, ready_job, admin):
        job = ready_job()
        with pytest.raises(PaymentIncomplete) as exc:
            job_service.change_status(job.id, "delivered", user_id=admin.id)

        assert exc.value.details["balance_due_cents"] == 21240
        assert "Balance due: ₹212.40" in exc.value.message
        assert job_service.get_job(job.id).status == "ready"

    def test_delivery_after_payment(self, ready_job, admin, sender):
        job = ready_job()
        assert "job_ready" in sender.kinds()
        payment_service.record_payment(
            job_id=job.id,
            amount_cents=21240,
            payment_type="full",
            payment_method="card",
            user_id=admin.id,
        )

        job = job_service.change_status(job.id, "delivered", user_id=admin.id)
        assert job.status == "delivered"
        assert job.delivered_at is not None
        assert job.actual_completion is not None

    def test_terminal_jobs_are_frozen(self, db_session, make_job, admin):
        job = make_job()
        job_service.cancel_job(job.id, user_id=admin.id)

        with pytest.raises(InvalidTransition):
            job_service.change_status(job.id, "inspection", user_id=admin.id)
        with pytest.raises(InvalidTransition):
            job_service.add_item(
                job.id,
                {"item_type": "labour", "description": "Wash", "unit_price_cents": 1000},
                user_id=admin.id,
            )
        with pytest.raises(InvalidTransition):
            job_service.update_billing(job.id, discount_cents=0, user_id=admin.id)

    def test_history_records_every_change(self, ready_job):
        job = ready_job()
        assert [h.status for h in job_service.status_history(job.id)] == [
            "created",
            "awaiting-approval",
            "approved",
            "in-progress",
            "ready",
        ]


class TestMechanicRestrictions:

    def test_assigned_mechanic_can_progress_job(self, db_session, make_job, mechanic):
        job = make_job(mechanic_user_ids=[mechanic.id])
        job = job_service.change_status(job.id, "inspection", user_id=mechanic.id)
        assert job.status == "inspection"
        assert job.status_history[-1].changed_by_user_id == mechanic.id

    def test_unassigned_mechanic_forbidden(self, db_session, make_job, mechanic, other_mechanic):
        job = make_job(mechanic_user_ids=[mechanic.id])
        with pytest.raises(Forbidden):
            job_service.change_status(job.id, "inspection", user_id=other_mechanic.id)

    def test_mechanic_cannot_cancel(self, db_session, make_job, mechanic):
        job = make_job(mechanic_user_ids=[mechanic.id])
        with pytest.raises(Forbidden):
            job_service.change_status(job.id, "cancelled", user_id=mechanic.id)

    def test_reassignment_replaces_set(self, db_session, make_job, admin, mechanic, other_mechanic):
        job = make_job(mechanic_user_ids=[mechanic.id])
        job = job_service.assign_mechanics(job.id, [other_mechanic.id], user_id=admin.id)
        assert job.assigned_mechanic_user_ids == [other_mechanic.id]
        assert [j.id for j in job_service.list_mechanic_jobs(mechanic.id)] == []
        assert [j.id for j in job_service.list_mechanic_jobs(other_mechanic.id)] == [job.id]

    def test_non_mechanic_cannot_be_assigned(self, db_session, make_job, admin, customer):
        job = make_job()
        with pytest.raises(ValidationError) as exc:
            job_service.assign_mechanics(job.id, [customer.id], user_id=admin.id)
        assert exc.value.details["invalid_user_ids"] == [customer.id]


# =============================================================================
# BILLING / ITEMS
# =============================================================================


class TestBilling:

    def test_update_billing_recomputes(self, db_session, make_job, admin):
        job = make_job()
        job = job_service.update_billing(job.id, tax_rate_bps=0, discount_reason="Loyal customer", user_id=admin.id)
        assert job.tax_amount_cents == 0
        assert job.grand_total_cents == 18000
        assert job.discount_reason == "Loyal customer"

    def test_tax_rate_bounds(self, db_session, make_job, admin):
        job = make_job()
        with pytest.raises(ValidationError):
            job_service.update_billing(job.id, tax_rate_bps=10001, user_id=admin.id)

    def test_remove_item_recomputes(self, db_session, make_job, admin):
        job = make_job(items=TWO_LINES, discount_cents=0, tax_rate_bps=0)
        job = job_service.remove_item(job.id, job.items[1].id, user_id=admin.id)
        assert len(job.items) == 1
        assert job.grand_total_cents == 30000

    def test_update_details(self, db_session, make_job, admin):
        job = make_job()
        job = job_service.update_details(job.id, {"diagnostics": "Worn pads", "fuel_level": "full"}, user_id=admin.id)
        assert job.diagnostics == "Worn pads"
        assert job.fuel_level == "full"

    def test_update_details_rejects_status(self, db_session, make_job, admin):
        job = make_job()
        with pytest.raises(ValidationError):
            job_service.update_details(job.id, {"status": "delivered"}, user_id=admin.id)


# =============================================================================
# INVOICING
# =============================================================================


class TestInvoicing:

    def _job_with_part(self, make_item, ready_job, quantity=2, opening_stock=5):
        pads = make_item(opening_stock=opening_stock)
        items = [
            dict(item_type="labour", description="Fit pads", quantity=1, unit_price_cents=20000),
            dict(item_type="part", inventory_item_id=pads.id, quantity=quantity),
        ]
        return pads, ready_job(items=items)

    def test_invoice_consumes_stock(self, db_session, make_item, ready_job, admin):
        pads, job = self._job_with_part(make_item, ready_job)

        job, changes = job_service.invoice_job(job.id, user_id=admin.id)

        assert job.invoice_number == job.job_number
        assert job.invoiced_at is not None
        assert [c.new_stock for c in changes] == [3]
        entries = ledger_service.entries_for_reference(REF_JOBCARD, job.id)
        assert [(e.type, e.quantity) for e in entries] == [("sale", -2)]

    def test_invoice_twice_rejected(self, db_session, make_item, ready_job, admin):
        _, job = self._job_with_part(make_item, ready_job)
        job_service.invoice_job(job.id, user_id=admin.id, invoice_number="INV-1")
        with pytest.raises(InvalidState):
            job_service.invoice_job(job.id, user_id=admin.id)

    def test_invoice_without_stock_changes_nothing(self, db_session, make_item, ready_job, admin):
        pads, job = self._job_with_part(make_item, ready_job, quantity=9)

        with pytest.raises(BatchFailure):
            job_service.invoice_job(job.id, user_id=admin.id)

        assert job_service.get_job(job.id).invoiced_at is None
        assert db_session.get(InventoryItem, pads.id).current_stock == 5

    def test_cannot_invoice_before_approval(self, db_session, make_job, admin):
        job = make_job()
        with pytest.raises(InvalidTransition):
            job_service.invoice_job(job.id, user_id=admin.id)

    def test_stock_lines_frozen_after_invoice(self, db_session, make_item, ready_job, admin):
        pads, job = self._job_with_part(make_item, ready_job)
        job_service.invoice_job(job.id, user_id=admin.id)
        part_line = job_service.get_job(job.id).items[1]

        with pytest.raises(InvalidState):
            job_service.remove_item(job.id, part_line.id, user_id=admin.id)

    def test_cancel_returns_invoiced_stock(self, db_session, make_item, ready_job, admin):
        pads, job = self._job_with_part(make_item, ready_job)
        job_service.invoice_job(job.id, user_id=admin.id)

        job = job_service.cancel_job(job.id, user_id=admin.id)

        assert db_session.get(InventoryItem, pads.id).current_stock == 5
        entries = ledger_service.entries_for_reference(REF_JOBCARD, job.id)
        assert [e.type for e in entries] == ["sale", "return"]
        assert entries[1].notes == f"Job card {job.job_number} cancelled"
        assert ledger_service.verify_item_ledger(pads.id)["consistent"] is True

    def test_cancel_returns_stock_taken_before_invoicing(self, db_session, make_item, make_job, admin):
        pads = make_item(opening_stock=5)
        job = make_job()
        stock_service.deduct_for_invoice(
            [stock_service.StockLine(pads.id, 3)],
            LedgerReference(REF_JOBCARD, job.id, job.job_number),
            user_id=admin.id,
        )
        assert job_service.get_job(job.id).invoiced_at is None

        job_service.cancel_job(job.id, user_id=admin.id)

        assert db_session.get(InventoryItem, pads.id).current_stock == 5
        entries = ledger_service.entries_for_reference(REF_JOBCARD, job.id)
        assert [(e.type, e.quantity) for e in entries] == [("sale", -3), ("return", 3)]
        assert ledger_service.verify_item_ledger(pads.id)["consistent"] is True

    def test_cancel_without_stock_writes_no_entries(self, db_session, make_job, admin):
        job = make_job()
        job_service.cancel_job(job.id, user_id=admin.id)
        assert ledger_service.entries_for_reference(REF_JOBCARD, job.id) == []


class TestStats:

    def test_job_stats(self, db_session, make_job, admin):
        make_job()
        cancelled = make_job()
        job_service.cancel_job(cancelled.id, user_id=admin.id)

        stats = job_service.job_stats()
        assert stats["by_status"]["created"] == 1
        assert stats["by_status"]["cancelled"] == 1
        assert stats["total_active"] == 1
        assert stats["total"] == 2
