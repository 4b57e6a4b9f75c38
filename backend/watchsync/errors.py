class SyncError(Exception):
    status_code = 500
    code = "internal"

    def __init__(self, message: str = None):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(SyncError):
    """Missing or malformed field. Rejected to the caller, never broadcast."""
    status_code = 400
    code = "validation"


class InvalidIndexError(ValidationError):
    code = "invalid_index"


class AuthenticationError(SyncError):
    status_code = 401
    code = "unauthenticated"


class AuthorizationError(SyncError):
    status_code = 403
    code = "forbidden"


class TransportError(SyncError):
    """Push or HTTP delivery failed on the client side."""
    status_code = 503
    code = "transport"
