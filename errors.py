"""
Error taxonomy

Raised by the ledger, catalog, auth and payment layers when a request cannot
be served. The API layer renders them as {"error": ..., "code": ...} with
the status code carried by the class.
"""


class APIError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Unexpected error"):
        super().__init__(message)
        self.message = message


class ValidationError(APIError):
    """Malformed or missing field, bad enum value, non-positive amount."""
    status_code = 400
    code = "validation_error"


class AuthenticationError(APIError):
    """Missing or invalid bearer credential."""
    status_code = 401
    code = "unauthenticated"


class AuthorizationError(APIError):
    """Authenticated, but not allowed to act here."""
    status_code = 403
    code = "forbidden"


class NotFoundError(APIError):
    status_code = 404
    code = "not_found"


class ConflictError(APIError):
    """Out of stock, or a lifecycle transition the order cannot make."""
    status_code = 409
    code = "conflict"


class DependencyError(APIError):
    """Store or processor unreachable or erroring."""
    status_code = 500
    code = "dependency_error"


class PaymentProviderError(DependencyError):
    code = "payment_provider_error"


class PartialCompletionError(APIError):
    """A multi-step write stopped after some steps were committed."""
    status_code = 500
    code = "partial_completion"
