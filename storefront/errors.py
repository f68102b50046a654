"""
Domain errors for the order and payment flow.

Each error is an HTTPException so routes can let them propagate; the handler
in main.py adds a machine-readable ``code`` to the response body.
"""
from fastapi import HTTPException, status


class DomainError(HTTPException):
    """Base class for all storefront domain errors."""
    code = "domain_error"

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, details: dict | None = None):
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.details = details or {}


class ValidationError(DomainError):
    """Bad input. Nothing was written."""
    code = "validation_error"

    def __init__(self, message: str, field: str | None = None, details: dict | None = None):
        if field:
            message = f"Validation error on {field}: {message}"
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class EmptyCart(ValidationError):
    code = "empty_cart"

    def __init__(self, message: str = "Your cart is empty"):
        super().__init__(message)


class InvalidAddress(ValidationError):
    code = "invalid_address"

    def __init__(self, missing: list[str]):
        super().__init__(
            f"Shipping address is missing: {', '.join(missing)}",
            details={"missing": missing},
        )


class NotFound(DomainError):
    code = "not_found"

    def __init__(self, resource_type: str, identifier, details: dict | None = None):
        super().__init__(
            f"{resource_type} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
        )


class PermissionDenied(DomainError):
    code = "permission_denied"

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message, status_code=status.HTTP_403_FORBIDDEN)


class InsufficientStock(DomainError):
    """Live stock is below the requested quantity. Nothing was written."""
    code = "insufficient_stock"

    def __init__(self, product_id: int, requested: int, available: int | None = None, name: str | None = None):
        label = name or f"product {product_id}"
        message = f"Insufficient stock for {label}. Requested: {requested}"
        if available is not None:
            message += f", available: {available}"
        super().__init__(
            message,
            status_code=status.HTTP_409_CONFLICT,
            details={"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id


class InvalidTransition(DomainError):
    """The state machine rejected a change. Order state is untouched."""
    code = "invalid_transition"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


class GatewayUnavailable(DomainError):
    """Transient gateway problem; the order stays pending and a new session may be requested."""
    code = "gateway_unavailable"

    def __init__(self, message: str = "Payment gateway is unavailable. Please try again."):
        super().__init__(message, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class PaymentFailed(DomainError):
    code = "payment_failed"

    def __init__(self, message: str = "Payment failed. You can try again from your cart.", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_402_PAYMENT_REQUIRED, details=details)


class SignatureInvalid(DomainError):
    code = "signature_invalid"

    def __init__(self, message: str = "Payment verification failed"):
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST)


class PartialFailure(DomainError):
    """Money was captured at the gateway but the local record could not be updated."""
    code = "partial_failure"

    def __init__(self, order_number: str):
        super().__init__(
            f"We received your payment for order {order_number} but could not finish "
            "updating it. Please contact support; no further action is needed from you.",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"order_number": order_number},
        )
