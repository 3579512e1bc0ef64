# Overview: Domain error taxonomy shared by services and routes.

"""
Back-office error taxonomy.

Every failure a caller can act on is one of these classes. Each carries a
stable machine-readable ``code`` (so a UI can tell a stock shortage from a
state-machine misuse), the HTTP status the routes map it to, and a
``details`` dict with the numbers behind the decision.
"""

from __future__ import annotations

from flask import jsonify


class BackofficeError(Exception):
    code = "error"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": str(self),
            "details": self.details,
        }


class ValidationError(BackofficeError):
    """Malformed or out-of-range input."""
    code = "validation_error"
    http_status = 400


class ReferenceNotFound(BackofficeError):
    """A product/order/supplier/payment id does not resolve."""
    code = "not_found"
    http_status = 404


class InsufficientStock(BackofficeError):
    """Requested quantity exceeds what the ledger can give."""
    code = "insufficient_stock"
    http_status = 409

    def __init__(self, message: str, *, product_id: int, requested: int, available: int):
        super().__init__(
            message,
            details={
                "product_id": product_id,
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class OverRelease(BackofficeError):
    code = "over_release"
    http_status = 409


class OverReceive(BackofficeError):
    code = "over_receive"
    http_status = 409


class InvalidTransition(BackofficeError):
    """State-machine transition from a terminal or incompatible state."""
    code = "invalid_transition"
    http_status = 409

    def __init__(self, message: str, *, current: str | None = None, requested: str | None = None):
        super().__init__(message, details={"from": current, "to": requested})


class PaymentError(BackofficeError):
    code = "payment_error"
    http_status = 409


def error_response(exc: BackofficeError):
    return jsonify(exc.to_dict()), exc.http_status
