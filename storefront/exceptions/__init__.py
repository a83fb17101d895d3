"""Custom exceptions for the storefront cart engine."""


class StorefrontError(Exception):
    """Base exception for all engine errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv


class AuthenticationRequired(StorefrontError):
    """Raised when a remote call needs a token the session does not have (or it was rejected)."""
    def __init__(self, message="Authentication required"):
        super().__init__(message, 401)


class NetworkError(StorefrontError):
    """Raised when the remote service cannot be reached."""
    def __init__(self, message="Remote service unreachable"):
        super().__init__(message, 503)


class ServerError(StorefrontError):
    """Raised for any non-success HTTP status from a remote service."""
    def __init__(self, status, message=None, payload=None):
        super().__init__(message or f"Remote service returned {status}", status, payload)
        self.status = status


class NotFoundError(ServerError):
    """Raised when the remote resource does not exist (HTTP 404)."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(404, message, payload)


class StockExceeded(ServerError):
    """Raised when the remote cart rejects a quantity because of stock."""
    def __init__(self, message="Not enough stock", payload=None):
        super().__init__(409, message, payload)


class ValidationError(StorefrontError):
    """
    Invalid input (400).

    Raised for bad request values such as quantities. Coupon rejections are
    returned inside a CouponOutcome instead of being raised.
    """
    def __init__(self, message, payload=None):
        super().__init__(message, 400, payload)


class SyncDrift(StorefrontError):
    """Internal signal: local and remote carts disagree and must be re-pushed."""
    def __init__(self, message="Local and remote carts differ"):
        super().__init__(message, 409)


class SyncFailed(StorefrontError):
    """Raised when every push attempt to the remote cart has failed."""
    def __init__(self, attempts, last_error=None):
        message = f"Cart sync failed after {attempts} attempts"
        super().__init__(message, 502, {'attempts': attempts})
        self.attempts = attempts
        self.last_error = last_error
