# Overview: Flask API routes for the stock ledger; read-only, cursor-paginated.

from flask import Blueprint, Response, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..errors import DomainError, error_response
from ..models.auth import ROLE_ADMIN
from ..services import ledger_service
from ..time_utils import day_stamp
from ..validation import optional_datetime, parse_int

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- date_from / date_to are inclusive.
- Pages are newest first; pass next_cursor back as ?cursor= to continue.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


def _filters_from_args() -> dict:
    args = request.args
    item_id = args.get("item_id")
    reference_id = args.get("reference_id")
    return {
        "item_id": parse_int(item_id, "item_id", minimum=1) if item_id else None,
        "txn_type": args.get("type") or None,
        "date_from": optional_datetime(args.get("date_from"), "date_from"),
        "date_to": optional_datetime(args.get("date_to"), "date_to"),
        "reference_kind": args.get("reference_kind") or None,
        "reference_id": parse_int(reference_id, "reference_id", minimum=1) if reference_id else None,
    }


@ledger_bp.get("")
@require_auth
@require_role(ROLE_ADMIN)
def list_ledger_route():
    """
    List ledger entries.

    Query: item_id, type, date_from, date_to, reference_kind, reference_id,
    cursor, limit (1-500, default 100)
    """
    try:
        filters = _filters_from_args()
        raw_limit = request.args.get("limit")
        limit = parse_int(raw_limit, "limit") if raw_limit else ledger_service.DEFAULT_PAGE_SIZE
        cursor = ledger_service.parse_cursor(request.args.get("cursor"))

        entries, next_cursor = ledger_service.list_entries(cursor=cursor, limit=limit, **filters)
        return jsonify({
            "items": [e.to_dict() for e in entries],
            "next_cursor": next_cursor,
            "limit": max(1, min(limit, ledger_service.MAX_PAGE_SIZE)),
        }), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list ledger entries")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/export")
@require_auth
@require_role(ROLE_ADMIN)
def export_ledger_route():
    """CSV export of the filtered ledger, oldest first. Same filters as the list endpoint."""
    try:
        filters = _filters_from_args()
        body = ledger_service.export_csv(**filters)
        filename = f"stock-ledger-{day_stamp()}.csv"
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to export ledger")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/verify/<int:item_id>")
@require_auth
@require_role(ROLE_ADMIN)
def verify_item_route(item_id: int):
    try:
        return jsonify(ledger_service.verify_item_ledger(item_id)), 200
    except DomainError as e:
        return error_response(e)
