# Overview: Domain error taxonomy shared by services and routes.

"""
Every failure a caller can act on is a DomainError subclass.

Each error carries a human message plus a `details` dict with the structured
facts needed to recover (which item lacked stock, remaining balance, which
item ids are unapproved). Routes serialize them with error_response() and the
matching HTTP status code; nothing here is retried or downgraded.
"""

from __future__ import annotations

from typing import Any

from flask import jsonify


class DomainError(Exception):
    """Base class for recoverable, caller-facing failures."""

    status_code = 400
    kind = "DomainError"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "details": self.details,
        }


class NotFound(DomainError):
    status_code = 404
    kind = "NotFound"


class Forbidden(DomainError):
    status_code = 403
    kind = "Forbidden"


class ConflictError(DomainError):
    """Uniqueness conflict (duplicate SKU, barcode)."""
    status_code = 409
    kind = "Conflict"


class InvalidTransition(DomainError):
    status_code = 409
    kind = "InvalidTransition"


class ApprovalRequired(DomainError):
    status_code = 409
    kind = "ApprovalRequired"


class InsufficientStock(DomainError):
    status_code = 409
    kind = "InsufficientStock"


class BatchFailure(DomainError):
    status_code = 409
    kind = "BatchFailure"


class PaymentIncomplete(DomainError):
    status_code = 409
    kind = "PaymentIncomplete"


class OutOfRange(DomainError):
    status_code = 400
    kind = "OutOfRange"


class InvalidState(DomainError):
    status_code = 409
    kind = "InvalidState"


class SignatureInvalid(DomainError):
    status_code = 400
    kind = "SignatureInvalid"


class Expired(DomainError):
    status_code = 410
    kind = "Expired"


class GatewayError(DomainError):
    """Payment gateway unreachable or rejected the request."""
    status_code = 502
    kind = "GatewayError"


def error_response(exc: DomainError):
    return jsonify(exc.to_dict()), exc.status_code
