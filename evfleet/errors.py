"""Error taxonomy shared by every lifecycle and ledger operation.

Operations raise one of these instead of returning half-applied state; the
surrounding transaction is rolled back, so callers can retry safely.
"""
from typing import Optional


class RentalError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, reason: str, *, detail: Optional[dict] = None):
        super().__init__(reason)
        self.reason = reason
        self.detail = detail or {}

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "detail": self.reason}
        if self.detail:
            body["context"] = self.detail
        return body


class NotFound(RentalError):
    kind = "not_found"
    status_code = 404


class Conflict(RentalError):
    kind = "conflict"
    status_code = 409


class Forbidden(RentalError):
    kind = "forbidden"
    status_code = 403


class ValidationError(RentalError):
    kind = "validation_error"
    status_code = 422


class GeofenceViolation(RentalError):
    kind = "geofence_violation"
    status_code = 409
