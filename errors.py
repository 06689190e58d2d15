"""
Error taxonomy for the switch list engine.

Every error is recoverable by the caller. The HTTP layer maps ``status_code``
onto the response; the engine itself never catches these.
"""
from typing import Any, List, Optional, Sequence


class RailOpsError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(RailOpsError):
    """Malformed input. Nothing was written."""
    status_code = 400


class NotFoundError(RailOpsError):
    """A referenced entity is absent. Nothing was written."""
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(RailOpsError):
    """Uniqueness violation, duplicate order, or a status precondition failure."""
    status_code = 409


class InvalidTransitionError(ConflictError):
    def __init__(self, kind: str, current: str, requested: str, allowed: Sequence[str]):
        allowed_txt = ", ".join(allowed) if allowed else "none (terminal state)"
        super().__init__(
            f"Invalid {kind} status transition '{current}' -> '{requested}'. Allowed: {allowed_txt}",
            details={"current": current, "requested": requested, "allowed": list(allowed)},
        )
        self.current = current
        self.requested = requested
        self.allowed = list(allowed)


class RollbackNotAllowedError(ConflictError):
    pass


class SwitchListApplyError(RailOpsError):
    """
    Raised when persisting a switch list stopped part way.

    ``applied_steps`` lists the saga steps that completed before the failure so
    the caller can log it; the next build on the same train releases whatever
    was committed and starts over.
    """
    status_code = 500

    def __init__(self, train_id: str, applied_steps: List[str], cause: Optional[BaseException] = None):
        super().__init__(
            f"Switch list for train '{train_id}' was only partially applied",
            details={"train_id": train_id, "applied_steps": list(applied_steps), "cause": str(cause) if cause else None},
        )
        self.train_id = train_id
        self.applied_steps = list(applied_steps)
