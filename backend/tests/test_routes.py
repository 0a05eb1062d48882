"""
HTTP API tests.

Verifies:
- Every protected endpoint requires a bearer token
- Role and ownership checks (admin / mechanic / customer)
- Domain errors map to their status code and kind
- Ledger listing and CSV export over HTTP
"""

import pytest

from workshop.services import job_service


# =============================================================================
# AUTHENTICATION
# =============================================================================


class TestAuthentication:

    @pytest.mark.parametrize("method,path", [
        ("post", "/api/jobcards"),
        ("get", "/api/jobcards/1"),
        ("post", "/api/jobcards/1/status"),
        ("post", "/api/inventory"),
        ("get", "/api/ledger"),
        ("get", "/api/ledger/export"),
        ("post", "/api/payments"),
        ("get", "/api/payments/collections"),
    ])
    def test_requires_token(self, client, db_session, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 401

    def test_bad_token(self, client, db_session):
        response = client.get("/api/ledger", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.get_json()["error"] == "Invalid or expired token"

    def test_health_is_public(self, client, db_session):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.get_json()
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["gateway_configured"] is True


# =============================================================================
# JOB CARDS
# =============================================================================


class TestJobCardRoutes:

    def _payload(self, customer, vehicle):
        return {
            "customer_user_id": customer.id,
            "vehicle_id": vehicle.id,
            "customer_complaints": ["Brake noise"],
            "items": [{"item_type": "labour", "description": "Brake check", "unit_price_cents": 50000}],
        }

    def test_admin_creates_job(self, client, headers_for, admin, customer, vehicle):
        response = client.post("/api/jobcards", json=self._payload(customer, vehicle), headers=headers_for(admin))

        assert response.status_code == 201
        job = response.get_json()["job_card"]
        assert job["status"] == "created"
        assert job["billing"]["grand_total_cents"] == 59000
        assert job["status_history"][0]["note"] == "Job card created"

    def test_customer_cannot_create_job(self, client, headers_for, customer, vehicle):
        response = client.post("/api/jobcards", json=self._payload(customer, vehicle), headers=headers_for(customer))
        assert response.status_code == 403

    def test_missing_fields(self, client, headers_for, admin):
        response = client.post("/api/jobcards", json={"vehicle_id": 1}, headers=headers_for(admin))
        assert response.status_code == 400
        assert response.get_json()["kind"] == "ValidationError"

    def test_customer_sees_own_job_without_internal_notes(self, client, headers_for, make_job, customer):
        job = make_job(notes_internal="Upsell brake fluid")

        response = client.get(f"/api/jobcards/{job.id}", headers=headers_for(customer))

        assert response.status_code == 200
        body = response.get_json()["job_card"]
        assert "notes_internal" not in body
        assert body["payment_summary"]["balance_due_cents"] == 21240

    def test_other_customer_forbidden(self, client, headers_for, make_job, other_customer):
        job = make_job()
        response = client.get(f"/api/jobcards/{job.id}", headers=headers_for(other_customer))
        assert response.status_code == 403
        assert response.get_json()["kind"] == "Forbidden"

    def test_unknown_job(self, client, headers_for, admin):
        response = client.get("/api/jobcards/999", headers=headers_for(admin))
        assert response.status_code == 404

    def test_customer_approves_items(self, client, headers_for, make_job, admin, customer):
        job = make_job()
        job_service.change_status(job.id, "awaiting-approval", user_id=admin.id)

        response = client.post(
            f"/api/jobcards/{job.id}/approve",
            json={"item_ids": [job.items[0].id]},
            headers=headers_for(customer),
        )

        assert response.status_code == 200
        assert response.get_json()["job_card"]["status"] == "approved"

    def test_invalid_transition_is_conflict(self, client, headers_for, make_job, admin):
        job = make_job()
        response = client.post(
            f"/api/jobcards/{job.id}/status",
            json={"status": "ready"},
            headers=headers_for(admin),
        )
        assert response.status_code == 409
        assert response.get_json()["kind"] == "InvalidTransition"

    def test_delivery_blocked_by_balance(self, client, headers_for, ready_job, admin):
        job = ready_job()
        response = client.post(
            f"/api/jobcards/{job.id}/status",
            json={"status": "delivered"},
            headers=headers_for(admin),
        )
        assert response.status_code == 409
        body = response.get_json()
        assert body["kind"] == "PaymentIncomplete"
        assert body["details"]["balance_due_cents"] == 21240

    def test_mechanic_lists_assigned_jobs(self, client, headers_for, make_job, mechanic):
        job = make_job(mechanic_user_ids=[mechanic.id])
        response = client.get("/api/jobcards/mine", headers=headers_for(mechanic))
        assert response.status_code == 200
        assert [j["id"] for j in response.get_json()["job_cards"]] == [job.id]


# =============================================================================
# INVENTORY / LEDGER
# =============================================================================


class TestInventoryAndLedgerRoutes:

    def test_insufficient_stock(self, client, headers_for, make_item, admin):
        pads = make_item(opening_stock=2)
        response = client.post(
            f"/api/inventory/{pads.id}/deduct-stock",
            json={"quantity": 5, "reason": "damage"},
            headers=headers_for(admin),
        )
        assert response.status_code == 409
        assert response.get_json()["kind"] == "InsufficientStock"

    def test_invoice_batch_failure(self, client, headers_for, make_item, make_job, admin):
        pads = make_item(opening_stock=5)
        filters = make_item(name="Oil Filter", category="filter", opening_stock=10)
        job = make_job()

        response = client.post(
            "/api/inventory/invoice/deduct",
            json={
                "job_card_id": job.id,
                "lines": [{"item_id": pads.id, "quantity": 100}, {"item_id": filters.id, "quantity": 1}],
            },
            headers=headers_for(admin),
        )

        assert response.status_code == 409
        assert response.get_json()["kind"] == "BatchFailure"
        item = client.get(f"/api/inventory/{filters.id}", headers=headers_for(admin)).get_json()["item"]
        assert item["current_stock"] == 10

    def test_invoice_batch_rejected_on_cancelled_job(self, client, headers_for, make_item, make_job, admin):
        pads = make_item(opening_stock=5)
        job = make_job()
        job_service.cancel_job(job.id, user_id=admin.id)

        response = client.post(
            "/api/inventory/invoice/deduct",
            json={"job_card_id": job.id, "lines": [{"item_id": pads.id, "quantity": 1}]},
            headers=headers_for(admin),
        )

        assert response.status_code == 409
        assert response.get_json()["kind"] == "InvalidTransition"
        item = client.get(f"/api/inventory/{pads.id}", headers=headers_for(admin)).get_json()["item"]
        assert item["current_stock"] == 5

    def test_item_edit_and_soft_delete(self, client, headers_for, make_item, admin, mechanic):
        pads = make_item(opening_stock=5)
        headers = headers_for(admin)

        response = client.patch(
            f"/api/inventory/{pads.id}",
            json={"min_stock": 1, "barcode": "8901234567890"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.get_json()["item"]["min_stock"] == 1

        rejected = client.patch(f"/api/inventory/{pads.id}", json={"current_stock": 50}, headers=headers)
        assert rejected.status_code == 400

        found = client.get("/api/inventory/barcode/8901234567890", headers=headers_for(mechanic))
        assert found.status_code == 200
        assert found.get_json()["item"]["id"] == pads.id

        assert client.delete(f"/api/inventory/{pads.id}", headers=headers_for(mechanic)).status_code == 403
        deleted = client.delete(f"/api/inventory/{pads.id}", headers=headers)
        assert deleted.status_code == 200
        assert deleted.get_json()["item"]["is_active"] is False
        assert client.get("/api/inventory/barcode/8901234567890", headers=headers).status_code == 404

    def test_mechanic_cannot_read_ledger(self, client, headers_for, mechanic):
        response = client.get("/api/ledger", headers=headers_for(mechanic))
        assert response.status_code == 403

    def test_ledger_listing(self, client, headers_for, make_item, admin):
        pads = make_item(opening_stock=5)
        headers = headers_for(admin)
        client.post(f"/api/inventory/{pads.id}/add-stock", json={"quantity": 3}, headers=headers)

        response = client.get(f"/api/ledger?item_id={pads.id}&limit=1", headers=headers)

        assert response.status_code == 200
        body = response.get_json()
        assert len(body["items"]) == 1
        assert body["items"][0]["quantity"] == 3
        assert body["next_cursor"]

        response = client.get(
            "/api/ledger",
            query_string={"item_id": pads.id, "cursor": body["next_cursor"]},
            headers=headers,
        )
        assert [e["quantity"] for e in response.get_json()["items"]] == [5]

    def test_ledger_export(self, client, headers_for, make_item, admin):
        make_item(opening_stock=5)
        response = client.get("/api/ledger/export", headers=headers_for(admin))

        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert "attachment; filename=stock-ledger-" in response.headers["Content-Disposition"]
        lines = response.get_data(as_text=True).strip().splitlines()
        assert len(lines) == 2

    def test_bad_cursor(self, client, headers_for, admin):
        response = client.get("/api/ledger?cursor=garbage", headers=headers_for(admin))
        assert response.status_code == 400


# =============================================================================
# PAYMENTS
# =============================================================================


class TestPaymentRoutes:

    def test_overpayment_rejected(self, client, headers_for, make_job, admin):
        job = make_job()
        response = client.post(
            "/api/payments",
            json={"job_card_id": job.id, "amount_cents": 30000, "payment_type": "full", "payment_method": "cash"},
            headers=headers_for(admin),
        )
        assert response.status_code == 400
        assert response.get_json()["kind"] == "OutOfRange"

    def test_record_payment(self, client, headers_for, make_job, admin):
        job = make_job()
        response = client.post(
            "/api/payments",
            json={"job_card_id": job.id, "amount_cents": 21240, "payment_type": "full", "payment_method": "upi"},
            headers=headers_for(admin),
        )
        assert response.status_code == 201
        assert response.get_json()["summary"]["balance_due_cents"] == 0

    def test_other_customer_cannot_read_payments(self, client, headers_for, make_job, other_customer):
        job = make_job()
        response = client.get(f"/api/payments/jobcards/{job.id}", headers=headers_for(other_customer))
        assert response.status_code == 403

    def test_checkout_verify_bad_signature(self, client, headers_for, gateway, make_job, admin):
        job = make_job()
        headers = headers_for(admin)
        payment = client.post(
            "/api/payments",
            json={
                "job_card_id": job.id,
                "amount_cents": 10000,
                "payment_type": "advance",
                "payment_method": "upi",
                "status": "pending",
            },
            headers=headers,
        ).get_json()["payment"]
        checkout = client.post(f"/api/payments/{payment['id']}/checkout", headers=headers).get_json()

        response = client.post("/api/payments/checkout/verify", json={
            "token": checkout["checkout_token"],
            "order_id": checkout["order"]["id"],
            "payment_id": "pay_1",
            "signature": "0" * 64,
        })

        assert response.status_code == 400
        assert response.get_json()["kind"] == "SignatureInvalid"
