"""
Typed errors raised by the decision/change-set services.
Each carries a stable ``kind`` the UI can switch on and the HTTP status the
API layer answers with.
"""

from typing import Optional


class DecisionEngineError(Exception):
    """Base for all decision lifecycle, change set and export errors."""
    kind = "Error"
    status_code = 400

    def __init__(self, message: str, decision_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.decision_id = decision_id

    def to_dict(self) -> dict:
        body = {"detail": self.message, "error": self.kind}
        if self.decision_id:
            body["decision_id"] = self.decision_id
        return body


class ValidationError(DecisionEngineError):
    """Malformed input: empty name, unknown enum member, bad UUID."""
    kind = "Validation"
    status_code = 400


class NotFoundError(DecisionEngineError):
    kind = "NotFound"
    status_code = 404


class InvalidTransitionError(DecisionEngineError):
    """Requested status transition is not legal from the current status."""
    kind = "InvalidTransition"
    status_code = 409


class InvalidStateError(DecisionEngineError):
    """Operation not allowed in the current state (e.g. editing an exported decision)."""
    kind = "InvalidState"
    status_code = 409


class ConflictError(DecisionEngineError):
    """Decision already claimed by another change set."""
    kind = "Conflict"
    status_code = 409


class IntegrityError(DecisionEngineError):
    """A multi-row cascade could not complete and was rolled back."""
    kind = "Integrity"
    status_code = 500
