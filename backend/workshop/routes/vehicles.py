# Overview: Flask API routes for registering and listing customer vehicles.

"""
Vehicle API Routes

SECURITY:
- admin: register, list and deactivate vehicles for any customer
- customer: register and list their own vehicles only
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import DomainError, Forbidden, error_response
from ..models.auth import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_MECHANIC
from ..services import vehicle_service
from ..validation import ValidationError, parse_int, require_fields, require_payload


vehicles_bp = Blueprint("vehicles", __name__, url_prefix="/api/vehicles")


def _owner_for_request(raw_owner_id) -> int:
    user = g.current_user
    if user.role == ROLE_CUSTOMER:
        if raw_owner_id is not None and parse_int(raw_owner_id, "owner_user_id", minimum=1) != user.id:
            raise Forbidden("Customers can only manage their own vehicles")
        return user.id
    if raw_owner_id is None:
        raise ValidationError("owner_user_id is required", {"field": "owner_user_id"})
    return parse_int(raw_owner_id, "owner_user_id", minimum=1)


@vehicles_bp.post("")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CUSTOMER)
def register_vehicle_route():
    """
    Register a vehicle.

    Request body:
    {
        "owner_user_id": 5,              // admin only; customers register for themselves
        "vehicle_number": "KA01AB1234",
        "brand": "Maruti",
        "model": "Swift",
        "year": 2019,
        "color": "Red"
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, ("vehicle_number", "brand", "model"))
        vehicle = vehicle_service.register_vehicle(
            owner_user_id=_owner_for_request(data.get("owner_user_id")),
            vehicle_number=data["vehicle_number"],
            brand=data["brand"],
            model=data["model"],
            year=data.get("year"),
            color=data.get("color"),
        )
        return jsonify({"vehicle": vehicle.to_dict()}), 201

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to register vehicle")
        return jsonify({"error": "Internal server error"}), 500


@vehicles_bp.get("")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MECHANIC, ROLE_CUSTOMER)
def list_vehicles_route():
    """Active vehicles of ?owner_user_id= (staff) or of the calling customer."""
    try:
        owner_id = _owner_for_request(request.args.get("owner_user_id"))
        vehicles = vehicle_service.list_customer_vehicles(owner_id)
        return jsonify({"vehicles": [v.to_dict() for v in vehicles]}), 200
    except DomainError as e:
        return error_response(e)


@vehicles_bp.delete("/<int:vehicle_id>")
@require_auth
@require_role(ROLE_ADMIN)
def deactivate_vehicle_route(vehicle_id: int):
    try:
        vehicle = vehicle_service.deactivate_vehicle(vehicle_id)
        return jsonify({"ok": True, "vehicle": vehicle.to_dict()}), 200

    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate vehicle")
        return jsonify({"error": "Internal server error"}), 500
