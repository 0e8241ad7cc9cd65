"""
Domain error taxonomy for the minutebook services.

Every service raises one of these; the API layer maps them to HTTP status
codes and the standardized error envelope. None of them is retried.
"""

from typing import Optional


class DomainError(Exception):
    """Base class for business-rule failures surfaced to the caller."""

    code = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        suggestion: Optional[str] = None
    ):
        self.message = message
        self.field = field
        self.suggestion = suggestion
        super().__init__(message)


class ValidationError(DomainError):
    """Missing or malformed input."""
    code = "VALIDATION_ERROR"


class NotFoundError(DomainError):
    """Referenced record does not exist (or is soft-deleted)."""
    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id, field: Optional[str] = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}", field=field)


class ConflictError(DomainError):
    """Request collides with existing state (duplicates, references)."""
    code = "CONFLICT"


class InsufficientSharesError(ConflictError):
    """Transfer would drive a holder's balance below zero."""

    code = "INSUFFICIENT_SHARES"

    def __init__(self, holder_id, share_class_id, requested: int, available: int):
        self.holder_id = holder_id
        self.share_class_id = share_class_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Holder {holder_id} has {available} shares of class {share_class_id}; "
            f"cannot transfer {requested}",
            field="quantity",
            suggestion=f"Transfer at most {available} shares"
        )


class SelfReferenceError(ValidationError):
    """Organization named as its own corporate shareholder."""
    code = "SELF_REFERENCE"
