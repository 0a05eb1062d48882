# Overview: Flask API routes for job cards; parses input and returns JSON responses.

"""
Job Card API Routes

SECURITY:
- admin: full access
- mechanic: read and status changes on assigned job cards only
- customer: read own job cards, approve items on them
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import DomainError, Forbidden, error_response
from ..models.auth import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_MECHANIC
from ..services import job_service
from ..validation import require_fields, require_payload


jobcards_bp = Blueprint("jobcards", __name__, url_prefix="/api/jobcards")


def _ensure_can_view(job) -> None:
    user = g.current_user
    if user.role == ROLE_ADMIN:
        return
    if user.role == ROLE_MECHANIC and user.id in job.assigned_mechanic_user_ids:
        return
    if user.role == ROLE_CUSTOMER and user.id == job.customer_user_id:
        return
    raise Forbidden("You do not have access to this job card", {"job_card_id": job.id})


# =============================================================================
# CREATION / DETAILS
# =============================================================================

@jobcards_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_job_route():
    """
    Create a job card.

    Request body:
    {
        "customer_user_id": 5,
        "vehicle_id": 9,
        "customer_complaints": ["Brake noise"],
        "odometer_reading": 42000,
        "fuel_level": "half",
        "items": [{"item_type": "labour", "description": "...", "quantity": 1, "unit_price_cents": 50000}],
        "mechanic_user_ids": [3]
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("customer_user_id", "vehicle_id"))

        job = job_service.create_job(
            customer_user_id=data["customer_user_id"],
            vehicle_id=data["vehicle_id"],
            user_id=g.current_user.id,
            items=data.get("items"),
            customer_complaints=data.get("customer_complaints"),
            odometer_reading=data.get("odometer_reading"),
            fuel_level=data.get("fuel_level"),
            estimated_completion=data.get("estimated_completion"),
            notes_customer=data.get("notes_customer"),
            notes_internal=data.get("notes_internal"),
            discount_cents=data.get("discount_cents", 0),
            discount_reason=data.get("discount_reason"),
            tax_rate_bps=data.get("tax_rate_bps"),
            mechanic_user_ids=data.get("mechanic_user_ids"),
        )
        return jsonify({"job_card": job.to_dict(include_history=True)}), 201

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create job card")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.get("/stats")
@require_auth
@require_role(ROLE_ADMIN)
def job_stats_route():
    return jsonify(job_service.job_stats()), 200


@jobcards_bp.get("/mine")
@require_auth
@require_role(ROLE_MECHANIC)
def my_jobs_route():
    """Job cards assigned to the calling mechanic."""
    include_closed = request.args.get("include_closed", "false").lower() == "true"
    jobs = job_service.list_mechanic_jobs(g.current_user.id, include_closed=include_closed)
    return jsonify({"job_cards": [j.to_dict() for j in jobs]}), 200


@jobcards_bp.get("/<int:job_id>")
@require_auth
def get_job_route(job_id: int):
    try:
        job = job_service.get_job(job_id)
        _ensure_can_view(job)
        summary = job_service.job_summary(job_id)
        if g.current_user.role == ROLE_CUSTOMER:
            summary.pop("notes_internal", None)
        return jsonify({"job_card": summary}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load job card")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.patch("/<int:job_id>")
@require_auth
@require_role(ROLE_ADMIN)
def update_job_route(job_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        job = job_service.update_details(job_id, data, user_id=g.current_user.id)
        return jsonify({"job_card": job.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update job card")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.get("/<int:job_id>/history")
@require_auth
def job_history_route(job_id: int):
    try:
        _ensure_can_view(job_service.get_job(job_id))
        history = job_service.status_history(job_id)
        return jsonify({"status_history": [h.to_dict() for h in history]}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load status history")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ITEMS
# =============================================================================

@jobcards_bp.post("/<int:job_id>/items")
@require_auth
@require_role(ROLE_ADMIN)
def add_item_route(job_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        item = job_service.add_item(job_id, data, user_id=g.current_user.id)
        job = job_service.get_job(job_id)
        return jsonify({"item": item.to_dict(), "job_card": job.to_dict()}), 201

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add job item")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.delete("/<int:job_id>/items/<int:item_id>")
@require_auth
@require_role(ROLE_ADMIN)
def remove_item_route(job_id: int, item_id: int):
    try:
        job = job_service.remove_item(job_id, item_id, user_id=g.current_user.id)
        return jsonify({"job_card": job.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to remove job item")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.post("/<int:job_id>/approve")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CUSTOMER)
def approve_items_route(job_id: int):
    """
    Approve items.

    Request body: {"item_ids": [1, 2]}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("item_ids",))
        job = job_service.approve_items(job_id, data["item_ids"], user_id=g.current_user.id)
        return jsonify({"job_card": job.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve job items")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# STATUS / BILLING / MECHANICS / INVOICE
# =============================================================================

@jobcards_bp.post("/<int:job_id>/status")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MECHANIC)
def change_status_route(job_id: int):
    """
    Change job status.

    Request body: {"status": "ready", "note": "optional"}

    Returns 409 with kind InvalidTransition / ApprovalRequired /
    PaymentIncomplete when a gate rejects the change.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("status",))
        job = job_service.change_status(
            job_id,
            data["status"],
            user_id=g.current_user.id,
            note=data.get("note"),
        )
        return jsonify({"job_card": job.to_dict(include_history=True)}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to change job status")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.patch("/<int:job_id>/billing")
@require_auth
@require_role(ROLE_ADMIN)
def update_billing_route(job_id: int):
    """
    Override discount / tax rate.

    Request body: {"discount_cents": 2000, "discount_reason": "...", "tax_rate_bps": 1800}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        job = job_service.update_billing(
            job_id,
            discount_cents=data.get("discount_cents"),
            discount_reason=data.get("discount_reason"),
            tax_rate_bps=data.get("tax_rate_bps"),
            user_id=g.current_user.id,
        )
        return jsonify({"billing": job.billing_dict(), "job_card": job.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update billing")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.get("/<int:job_id>/billing/preview")
@require_auth
def preview_billing_route(job_id: int):
    try:
        _ensure_can_view(job_service.get_job(job_id))
        only_approved = request.args.get("only_approved", "true").lower() != "false"
        totals = job_service.preview_billing(job_id, only_approved=only_approved)
        return jsonify({"billing": totals.to_dict(), "only_approved": only_approved}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to preview billing")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.put("/<int:job_id>/mechanics")
@require_auth
@require_role(ROLE_ADMIN)
def assign_mechanics_route(job_id: int):
    """Request body: {"mechanic_user_ids": [3, 4]}"""
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("mechanic_user_ids",))
        job = job_service.assign_mechanics(job_id, data["mechanic_user_ids"], user_id=g.current_user.id)
        return jsonify({"job_card": job.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to assign mechanics")
        return jsonify({"error": "Internal server error"}), 500


@jobcards_bp.post("/<int:job_id>/invoice")
@require_auth
@require_role(ROLE_ADMIN)
def invoice_job_route(job_id: int):
    """
    Invoice the job and consume linked stock.

    Request body (optional): {"invoice_number": "INV-2026-001"}
    Returns 409 BatchFailure with per-line details when stock is short.
    """
    try:
        data = request.get_json(silent=True) or {}
        job, changes = job_service.invoice_job(
            job_id,
            user_id=g.current_user.id,
            invoice_number=data.get("invoice_number"),
        )
        return jsonify({
            "job_card": job.to_dict(),
            "stock_changes": [c.to_dict() for c in changes],
        }), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to invoice job card")
        return jsonify({"error": "Internal server error"}), 500
