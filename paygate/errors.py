"""Error taxonomy shared by services and routers.

Services raise these; ``paygate.app`` renders them as ``{"error": message}``
with the class's HTTP status.
"""


class PaygateError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationRequired(PaygateError):
    status_code = 401
    default_message = "Authentication required"


class Forbidden(PaygateError):
    status_code = 403
    default_message = "Not allowed"


class NotFound(PaygateError):
    status_code = 404
    default_message = "Not found"


class ProfileNotFound(NotFound):
    default_message = "Profile not found"


class ValidationError(PaygateError):
    status_code = 400
    default_message = "Invalid request"


class InvalidSignature(ValidationError):
    default_message = "Invalid signature"


class Conflict(PaygateError):
    status_code = 409
    default_message = "Conflict"


class TrialAlreadyUsed(Conflict):
    default_message = "Trial has already been used"


class OfferAlreadyAccepted(Conflict):
    default_message = "Offer has already been accepted"


class OfferExpired(ValidationError):
    default_message = "Offer has expired"


class RateLimited(PaygateError):
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, message: str | None = None, retry_after: int = 1):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamUnavailable(PaygateError):
    """Payment provider failed or timed out. Safe to retry."""

    status_code = 503
    default_message = "Payment provider unavailable, please retry"
    retryable = True
