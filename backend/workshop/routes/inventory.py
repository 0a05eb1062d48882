# Overview: Flask API routes for inventory operations; parses input and returns JSON responses.

"""
Inventory API Routes

Every stock mutation goes through stock_service, which appends exactly one
ledger entry per item touched. There is no endpoint that writes
current_stock directly.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import DomainError, InvalidTransition, error_response
from ..models.auth import ROLE_ADMIN, ROLE_MECHANIC
from ..models.inventory import REF_JOBCARD
from ..services import job_service, stock_service
from ..services.ledger_service import LedgerReference
from ..validation import optional_str, parse_int, require_fields, require_payload


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_item_route():
    """
    Create an inventory item.

    Request body:
    {
        "name": "Brake Pad Set",
        "category": "brakes",
        "unit": "set",
        "sku": "optional, generated from the category when omitted",
        "cost_price_cents": 80000,
        "selling_price_cents": 120000,
        "opening_stock": 10
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("name", "category"))

        item = stock_service.create_item(
            name=data["name"],
            category=data["category"],
            user_id=g.current_user.id,
            sku=data.get("sku"),
            barcode=data.get("barcode"),
            unit=data.get("unit", "piece"),
            brand=data.get("brand"),
            part_number=data.get("part_number"),
            description=data.get("description"),
            min_stock=data.get("min_stock", 5),
            max_stock=data.get("max_stock", 100),
            cost_price_cents=data.get("cost_price_cents", 0),
            selling_price_cents=data.get("selling_price_cents", 0),
            opening_stock=data.get("opening_stock", 0),
        )
        return jsonify({"item": item.to_dict()}), 201

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create inventory item")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/low-stock")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MECHANIC)
def low_stock_route():
    result = stock_service.low_stock_items()
    return jsonify({
        "out_of_stock": [i.to_dict() for i in result["out_of_stock"]],
        "low_stock": [i.to_dict() for i in result["low_stock"]],
        "total": result["total"],
    }), 200


@inventory_bp.get("/valuation")
@require_auth
@require_role(ROLE_ADMIN)
def valuation_route():
    return jsonify(stock_service.stock_valuation()), 200


@inventory_bp.get("/<int:item_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MECHANIC)
def get_item_route(item_id: int):
    try:
        item = stock_service.get_item(item_id)
        return jsonify({"item": item.to_dict()}), 200
    except DomainError as e:
        return error_response(e)


@inventory_bp.get("/barcode/<string:barcode>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MECHANIC)
def get_by_barcode_route(barcode: str):
    try:
        item = stock_service.get_by_barcode(barcode)
        return jsonify({"item": item.to_dict()}), 200
    except DomainError as e:
        return error_response(e)


@inventory_bp.patch("/<int:item_id>")
@require_auth
@require_role(ROLE_ADMIN)
def update_item_route(item_id: int):
    """
    Edit catalogue fields.

    Accepts any of: name, barcode, category, unit, brand, part_number,
    description, min_stock, max_stock, cost_price_cents, selling_price_cents,
    is_active. current_stock is rejected with 400.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        item = stock_service.update_item(item_id, data, user_id=g.current_user.id)
        return jsonify({"item": item.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update inventory item")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.delete("/<int:item_id>")
@require_auth
@require_role(ROLE_ADMIN)
def deactivate_item_route(item_id: int):
    """Soft delete: the item is deactivated, its ledger history is kept."""
    try:
        item = stock_service.deactivate_item(item_id, user_id=g.current_user.id)
        return jsonify({"ok": True, "item": item.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate inventory item")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SINGLE-ITEM MUTATIONS
# =============================================================================

@inventory_bp.post("/<int:item_id>/add-stock")
@require_auth
@require_role(ROLE_ADMIN)
def add_stock_route(item_id: int):
    """
    Receive stock.

    Request body:
    {
        "quantity": 10,
        "unit_price_cents": 80000,       // optional, defaults to cost price
        "supplier_name": "optional",
        "supplier_invoice_number": "optional",
        "notes": "optional"
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("quantity",))
        change = stock_service.add_stock(
            item_id,
            data["quantity"],
            user_id=g.current_user.id,
            unit_price_cents=data.get("unit_price_cents"),
            notes=optional_str(data.get("notes"), "notes"),
            supplier_name=optional_str(data.get("supplier_name"), "supplier_name", max_length=255),
            supplier_invoice_number=optional_str(
                data.get("supplier_invoice_number"), "supplier_invoice_number", max_length=64
            ),
        )
        return jsonify({"change": change.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:item_id>/deduct-stock")
@require_auth
@require_role(ROLE_ADMIN)
def deduct_stock_route(item_id: int):
    """
    Remove stock outside an invoice.

    Request body: {"quantity": 2, "reason": "damage" | "adjustment", "notes": "optional"}
    Returns 409 InsufficientStock when the item cannot cover the quantity.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("quantity",))
        change = stock_service.deduct_stock(
            item_id,
            data["quantity"],
            reason=data.get("reason"),
            user_id=g.current_user.id,
            notes=optional_str(data.get("notes"), "notes"),
        )
        return jsonify({"change": change.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deduct stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:item_id>/adjust-stock")
@require_auth
@require_role(ROLE_ADMIN)
def adjust_stock_route(item_id: int):
    """Set stock to a counted quantity. Request body: {"new_quantity": 7, "notes": "optional"}"""
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("new_quantity",))
        change = stock_service.adjust_stock_to(
            item_id,
            data["new_quantity"],
            user_id=g.current_user.id,
            notes=optional_str(data.get("notes"), "notes"),
        )
        return jsonify({"change": change.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# INVOICE BATCHES
# =============================================================================

def _invoice_reference(data: dict) -> LedgerReference:
    require_fields(data, ("job_card_id", "lines"))
    job = job_service.get_job(parse_int(data["job_card_id"], "job_card_id", minimum=1))
    if job.is_terminal:
        raise InvalidTransition(
            f"Job card is {job.status}; stock can no longer be moved against it",
            {"job_card_id": job.id, "status": job.status},
        )
    number = optional_str(data.get("invoice_number"), "invoice_number", max_length=64)
    return LedgerReference(REF_JOBCARD, job.id, number or job.invoice_number or job.job_number)


@inventory_bp.post("/invoice/deduct")
@require_auth
@require_role(ROLE_ADMIN)
def deduct_for_invoice_route():
    """
    Deduct a batch of lines for an invoice, all or nothing.

    Request body:
    {
        "job_card_id": 12,
        "invoice_number": "INV-001",
        "lines": [{"item_id": 1, "quantity": 2}, {"item_id": 4, "quantity": 1}]
    }

    Returns 409 BatchFailure listing every failing line; nothing is written
    in that case.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        reference = _invoice_reference(data)
        lines = stock_service.parse_lines(data["lines"])
        changes = stock_service.deduct_for_invoice(lines, reference, user_id=g.current_user.id)
        return jsonify({
            "reference": reference.to_dict(),
            "changes": [c.to_dict() for c in changes],
        }), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deduct stock for invoice")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/invoice/return")
@require_auth
@require_role(ROLE_ADMIN)
def return_from_invoice_route():
    """Return a batch of lines for an invoice. Same body as /invoice/deduct plus optional "reason"."""
    try:
        data = require_payload(request.get_json(silent=True))
        reference = _invoice_reference(data)
        lines = stock_service.parse_lines(data["lines"])
        changes = stock_service.return_from_invoice(
            lines,
            reference,
            reason=optional_str(data.get("reason"), "reason"),
            user_id=g.current_user.id,
        )
        return jsonify({
            "reference": reference.to_dict(),
            "changes": [c.to_dict() for c in changes],
        }), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to return stock for invoice")
        return jsonify({"error": "Internal server error"}), 500
