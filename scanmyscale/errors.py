"""Exception types.

Provider errors are raised only for unexpected conditions (timeouts after
retries, malformed vendor responses). Expected vendor rejections travel as
PaymentResult failures instead.

Billing errors are raised by the subscription service and converted to JSON
responses by the blueprints, using each class's status_code.
"""


# ──────────────────────────────────────────────
# Provider (transport-level) errors
# ──────────────────────────────────────────────

class PaymentProviderError(Exception):
    """Base class for unexpected provider failures."""


class ProviderTimeoutError(PaymentProviderError):
    """Vendor call timed out on every attempt."""


class ProviderConnectionError(PaymentProviderError):
    """Vendor could not be reached on any attempt."""


class ProviderResponseError(PaymentProviderError):
    """Vendor answered with a body we could not parse."""


class ProviderAPIError(PaymentProviderError):
    """Vendor answered with a non-2xx status."""

    def __init__(self, status_code, message):
        super().__init__(f"API error ({status_code}): {message}")
        self.status_code = status_code
        self.message = message


# ──────────────────────────────────────────────
# Billing (request-level) errors
# ──────────────────────────────────────────────

class BillingError(Exception):
    status_code = 400
    default_message = "Something went wrong. Please try again."

    def __init__(self, message=None, code=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.code = code

    def to_dict(self):
        body = {"error": self.message}
        if self.code:
            body["code"] = str(getattr(self.code, "value", self.code))
        return body


class InvalidRequestError(BillingError):
    status_code = 400


class PaymentNotCompletedError(BillingError):
    status_code = 400
    default_message = "Payment has not been completed"


class OwnershipError(BillingError):
    status_code = 403
    default_message = "This payment session does not belong to your account"


class NotFoundError(BillingError):
    status_code = 404
    default_message = "Not found"


class ProviderUnavailableError(BillingError):
    status_code = 503
    default_message = "Payment provider is not available for your market"


class UpstreamError(BillingError):
    """The payment vendor rejected or failed a request. Raw vendor text is logged, not returned."""

    status_code = 502
