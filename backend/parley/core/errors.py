"""
Error taxonomy for the session subsystem.

Every error carries a ``status_code`` so the API layer can translate it
into an HTTP response without knowing the concrete type.
"""

from typing import Optional


class ParleyError(Exception):
    """Base exception for all session subsystem errors."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(ParleyError):
    """Raised when a referenced session or chat log does not exist."""

    status_code = 404
    error_code = "not_found"

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class ValidationError(ParleyError):
    """Raised when arguments are malformed. Nothing is mutated."""

    status_code = 400
    error_code = "invalid_request"


class PersistenceError(ParleyError):
    """Raised when the storage engine fails to read or write a record."""

    status_code = 503
    error_code = "persistence_failed"

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class GenerationError(ParleyError):
    """Raised when the text-generation collaborator fails or times out."""

    status_code = 502
    error_code = "generation_failed"
