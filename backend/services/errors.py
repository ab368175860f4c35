"""
RepairDesk CRM - Workflow errors

Raised by services, translated to HTTP responses once in server.py.
"""

from typing import Optional


class CRMError(Exception):
    """Base class for all workflow errors"""
    status_code = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CRMError):
    """Malformed or missing input. Not retried."""
    status_code = 400


class TransitionError(ValidationError):
    """Status change not permitted by the transition table"""

    def __init__(self, message: str, from_status: str = None, to_status: str = None, allowed=None):
        super().__init__(message, from_status=from_status, to_status=to_status, allowed=allowed or [])
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = allowed or []


class NotFoundError(CRMError):
    """Referenced record absent (or staff inactive)"""
    status_code = 404

    def __init__(self, message: str, collection: str = None, record_id: str = None):
        super().__init__(message, collection=collection, record_id=record_id)
        self.collection = collection
        self.record_id = record_id


class ConflictError(CRMError):
    """Stale write or a link that may only be set once"""
    status_code = 409


class PersistenceError(CRMError):
    """Store call failed. The caller may retry the whole operation."""
    status_code = 500


class PartialFailureWarning:
    """
    Primary effect succeeded, a linked secondary update did not.
    Returned next to the result, never raised.
    """

    def __init__(self, step: str, message: str, entity_id: Optional[str] = None):
        self.step = step
        self.message = message
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        return {"step": self.step, "message": self.message, "entity_id": self.entity_id}

    def __repr__(self):
        return f"PartialFailureWarning(step={self.step!r}, message={self.message!r})"


class DuplicateRecordError(PersistenceError):
    """Insert rejected by a unique index"""
    status_code = 409
