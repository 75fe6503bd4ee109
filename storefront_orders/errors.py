"""
Error taxonomy for the order lifecycle and payment settlement engine.

Domain modules raise these; the API layer renders them as ``{"detail": ...}``
responses with the attached status code.
"""
from typing import Optional


class OrderServiceError(Exception):
    """Base class for all errors surfaced to API callers."""
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(OrderServiceError):
    """Malformed or missing input; user-correctable."""
    status_code = 400


class NotFoundError(OrderServiceError):
    status_code = 404


class ProductUnavailable(NotFoundError):
    """Product missing or not active."""


class VariantNotFound(NotFoundError):
    """No variant of the product matches the requested size and color."""


class InsufficientStock(OrderServiceError):
    status_code = 409


class SignatureInvalid(OrderServiceError):
    """Gateway signature mismatch. The message never says whether an order exists."""
    status_code = 400

    def __init__(self, message: str = "Payment verification failed"):
        super().__init__(message)


class InvalidTransition(OrderServiceError):
    status_code = 409


class PermissionDenied(OrderServiceError):
    status_code = 403


class UpstreamFailure(OrderServiceError):
    """Gateway or collaborating service failed or timed out; safe to retry."""
    status_code = 503


class DuplicateGatewayOrder(OrderServiceError):
    """An order for this gateway order id already exists (lost a creation race)."""
    status_code = 409
