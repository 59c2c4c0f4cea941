"""Errors raised by the order services and rendered by the API."""


class ServiceError(Exception):
    status_code = 500
    reason = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400
    reason = "VALIDATION_ERROR"


class NotFoundError(ServiceError):
    status_code = 404
    reason = "NOT_FOUND"


class ForbiddenError(ServiceError):
    status_code = 403
    reason = "FORBIDDEN"


class StateConflictError(ServiceError):
    status_code = 409
    reason = "STATE_CONFLICT"


class UpstreamError(ServiceError):
    status_code = 502
    reason = "UPSTREAM_ERROR"


class PaymentGatewayError(UpstreamError):
    reason = "PAYMENT_GATEWAY_ERROR"
