from django.core.exceptions import ImproperlyConfigured


class PaymentError(Exception):
    """Base error carrying the HTTP status and message the API surfaces."""

    status_code = 500
    default_message = "Payment request failed"

    def __init__(self, message=None, *, status_code=None, detail=None, errors=None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail
        self.errors = errors
        super().__init__(self.message)


class InvalidRequest(PaymentError):
    status_code = 400
    default_message = "Validation failed"


class ConfigurationMissing(PaymentError, ImproperlyConfigured):
    status_code = 500
    default_message = "Payment gateway configuration missing"


class GatewayError(PaymentError):
    status_code = 502
    default_message = "Payment service unavailable"


class GatewayUnavailable(GatewayError):
    status_code = 503
    default_message = "Payment service is currently unavailable. Please try again later."


class GatewayRejected(GatewayError):
    default_message = "Failed to create payment request"


class GatewayProtocolError(GatewayError):
    status_code = 502
    default_message = "Invalid response from payment API"


class DuplicateOrder(PaymentError):
    status_code = 409
    default_message = "Duplicate order - please try again"


class OrderNotFound(PaymentError):
    status_code = 404
    default_message = "Order not found"


class StatusNotFound(PaymentError):
    status_code = 404
    default_message = "Order status not found"
