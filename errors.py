"""
Error taxonomy shared by the repository, engines and API layer.

Every error carries a stable `code` so callers can branch on it and a
human-readable message for display.
"""

from typing import Optional


class RecordsError(Exception):
    code = "Error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self):
        return {"code": self.code, "detail": self.message}


class NotFound(RecordsError):
    code = "NotFound"

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection} document '{doc_id}' not found")
        self.collection = collection
        self.doc_id = doc_id


class ReferenceMissing(RecordsError):
    """A document referenced by a multi-document operation does not exist."""

    code = "ReferenceError"

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"Referenced {collection} document '{doc_id}' does not exist")
        self.collection = collection
        self.doc_id = doc_id


class ValidationError(RecordsError):
    code = "ValidationError"

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self):
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class InvalidScore(ValidationError):
    code = "InvalidScore"


class Conflict(RecordsError):
    code = "Conflict"


class AuthorizationDenied(RecordsError):
    code = "AuthorizationDenied"

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Operation denied: {reason}")
        self.reason = reason

    def to_dict(self):
        return {"code": self.code, "reason": self.reason, "detail": self.message}


class TransientStoreError(RecordsError):
    """Write conflict or timeout in the document store. Safe to retry."""

    code = "TransientStoreError"
