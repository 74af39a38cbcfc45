"""
Procurement workflow errors.

Services raise these; the handlers registered in main.py turn them into
JSON responses with the matching HTTP status.
"""
from decimal import Decimal
from typing import List, Optional


class ProcurementError(Exception):
    """Base class for all workflow errors"""
    status_code = 400
    error_type = "procurement_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors) if errors else []

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "errors": self.errors,
            "error_type": self.error_type
        }


class ValidationError(ProcurementError):
    """Missing or invalid input, detected before anything is changed"""
    error_type = "validation_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message, errors or [message])


class PriceRatchetViolation(ProcurementError):
    """A re-submitted unit price is higher than the previously quoted one"""
    error_type = "price_ratchet_violation"

    def __init__(self, item_name: str, previous_price: Decimal, offered_price: Decimal):
        self.item_name = item_name
        self.previous_price = previous_price
        self.offered_price = offered_price
        message = (
            f"Unit price for '{item_name}' cannot exceed the previously quoted price "
            f"({previous_price:.2f}); offered {offered_price:.2f}"
        )
        super().__init__(message, [message])

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["item_name"] = self.item_name
        payload["previous_price"] = float(self.previous_price)
        payload["offered_price"] = float(self.offered_price)
        return payload


class StateTransitionError(ProcurementError):
    """Operation not permitted from the current status"""
    status_code = 409
    error_type = "state_transition_error"


class NotFound(ProcurementError):
    status_code = 404
    error_type = "not_found"


class ResolutionFailure(ProcurementError):
    """Catalog lookup failed. Never surfaced to API callers."""
    status_code = 502
    error_type = "resolution_failure"
