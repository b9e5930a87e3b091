"""
Error taxonomy for the POS core.

Everything the core raises derives from POSError so the HTTP layer can map
failures with a handful of exception handlers.
"""
from typing import Optional


class POSError(Exception):
    """Base class for failures surfaced to the initiating action."""

    message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


class ValidationError(POSError):
    """Rejected before any persistence call (not authenticated, empty cart)."""

    message = "Invalid request"


class NotFoundError(POSError):
    message = "Not found"


class DuplicateError(POSError):
    message = "Already exists"


class StockConflictError(POSError):
    """A line asks for more copies than the store currently holds."""

    def __init__(self, title: str, requested: int, available: int):
        self.title = title
        self.requested = requested
        self.available = available
        super().__init__(f"Not enough stock for {title}")

    def to_dict(self) -> dict:
        return {
            "detail": self.detail,
            "title": self.title,
            "requested": self.requested,
            "available": self.available,
        }


class PersistenceError(POSError):
    """Transport or store failure. Never retried automatically."""

    message = "Failed to save order. Please try again."


class MalformedDocumentError(PersistenceError):
    """A stored document does not match its collection schema."""

    def __init__(self, collection: str, doc_id: Optional[str], reason: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Malformed document {doc_id or '?'} in '{collection}': {reason}")
