# Overview: Customer vehicle registry; job cards snapshot these rows at intake.

from __future__ import annotations

import re

from flask import current_app

from ..errors import ConflictError, InvalidState, NotFound
from ..extensions import db
from ..models import User, Vehicle
from ..models.auth import ROLE_CUSTOMER
from ..time_utils import utcnow
from ..validation import ValidationError, optional_str, parse_int, require_str
from .concurrency import commit_unit, run_with_retry


# Indian registration plate, e.g. KA01AB1234 or DL3C1234
VEHICLE_NUMBER_RE = re.compile(r"^[A-Z]{2}[0-9]{1,2}[A-Z]{0,3}[0-9]{1,4}$")


def normalize_vehicle_number(raw) -> str:
    """Uppercase and drop spaces and hyphens: "ka-01 ab 1234" -> "KA01AB1234"."""
    value = require_str(raw, "vehicle_number", max_length=32)
    value = re.sub(r"[\s-]", "", value).upper()
    if not VEHICLE_NUMBER_RE.match(value):
        raise ValidationError("Please enter a valid vehicle number", {"field": "vehicle_number"})
    return value


def _get_owner(owner_user_id: int) -> User:
    owner = db.session.get(User, owner_user_id)
    if owner is None or owner.role != ROLE_CUSTOMER:
        raise NotFound("Customer not found", {"customer_user_id": owner_user_id})
    if not owner.is_active:
        raise InvalidState("Customer account is inactive", {"customer_user_id": owner_user_id})
    return owner


def register_vehicle(
    *,
    owner_user_id: int,
    vehicle_number: str,
    brand: str,
    model: str,
    year: int | None = None,
    color: str | None = None,
) -> Vehicle:
    """
    Register a vehicle to a customer.

    A number already registered to the same customer but deactivated is
    reactivated with the new details. A number held by anyone else, or
    still active, is a ConflictError.
    """
    owner_user_id = parse_int(owner_user_id, "owner_user_id", minimum=1)
    vehicle_number = normalize_vehicle_number(vehicle_number)
    brand = require_str(brand, "brand", max_length=64)
    model = require_str(model, "model", max_length=64)
    if year is not None:
        year = parse_int(year, "year", minimum=1900, maximum=utcnow().year + 1)
    color = optional_str(color, "color", max_length=32)

    def _op() -> Vehicle:
        owner = _get_owner(owner_user_id)
        vehicle = db.session.query(Vehicle).filter_by(vehicle_number=vehicle_number).first()
        if vehicle is not None:
            if vehicle.owner_user_id != owner.id or vehicle.is_active:
                raise ConflictError("Vehicle already registered", {"vehicle_number": vehicle_number})
            vehicle.is_active = True
        else:
            vehicle = Vehicle(owner_user_id=owner.id, vehicle_number=vehicle_number)
            db.session.add(vehicle)

        vehicle.brand = brand
        vehicle.model = model
        vehicle.year = year
        vehicle.color = color
        db.session.flush()
        current_app.logger.info("Vehicle %s registered to customer %s", vehicle_number, owner.id)
        return commit_unit(vehicle)

    return run_with_retry(_op)


def get_vehicle(vehicle_id: int) -> Vehicle:
    vehicle = db.session.get(Vehicle, vehicle_id)
    if vehicle is None or not vehicle.is_active:
        raise NotFound("Vehicle not found", {"vehicle_id": vehicle_id})
    return vehicle


def list_customer_vehicles(owner_user_id: int) -> list[Vehicle]:
    return (
        db.session.query(Vehicle)
        .filter(Vehicle.owner_user_id == owner_user_id, Vehicle.is_active.is_(True))
        .order_by(Vehicle.created_at.desc(), Vehicle.id.desc())
        .all()
    )


def deactivate_vehicle(vehicle_id: int) -> Vehicle:
    """Soft delete. Existing job cards keep their snapshot; new ones cannot be opened."""
    def _op() -> Vehicle:
        vehicle = get_vehicle(vehicle_id)
        vehicle.is_active = False
        return commit_unit(vehicle)

    return run_with_retry(_op)
