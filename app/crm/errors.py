"""
Error taxonomy shared by the lifecycle engine, the record store and the request layer.

Every failure surfaced to a caller is a CrmError subclass; the app factory maps
them to JSON responses using `status_code` and `kind`.
"""
from __future__ import annotations


class CrmError(Exception):
    status_code = 500
    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class ValidationError(CrmError):
    """Malformed or out-of-range input (empty note, non-positive amount, unknown stage)."""

    status_code = 400
    kind = "validation_error"

    def __init__(self, message: str, *, fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.fields = list(fields or [])

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.fields:
            d["fields"] = self.fields
        return d


class NotFoundError(CrmError):
    status_code = 404
    kind = "not_found"


class AuthorizationError(CrmError):
    """Actor role is insufficient for a privileged mutation."""

    status_code = 403
    kind = "authorization_error"


class StorageError(CrmError):
    """Opaque persistence failure. Always propagated, never retried."""

    status_code = 500
    kind = "storage_error"
