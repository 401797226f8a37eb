"""Typed errors raised by the Flake engine and its gateways.

Each error carries the HTTP status class the API layer answers with, so
controllers never have to translate kinds by hand.
"""


class FlakeError(Exception):
    """Base class for every domain and gateway failure."""

    status_code = 500
    kind = "internal"

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self):
        payload = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(FlakeError):
    status_code = 404
    kind = "not_found"


class Forbidden(FlakeError):
    status_code = 403
    kind = "forbidden"


class Conflict(FlakeError):
    status_code = 409
    kind = "conflict"


class InvalidInput(FlakeError):
    status_code = 400
    kind = "invalid_input"


class Unauthorized(FlakeError):
    status_code = 401
    kind = "unauthorized"


class InvalidOperation(FlakeError):
    """Operation does not apply to this Flake's verification type."""

    status_code = 422
    kind = "invalid_operation"


class UpstreamUnavailable(FlakeError):
    """Ledger RPC, evidence store or adjudicator call failed or timed out."""

    status_code = 502
    kind = "upstream_unavailable"
