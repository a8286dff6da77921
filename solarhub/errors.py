"""
Typed errors raised by the workflow engine.

Every error carries a stable ``code`` so callers (and the HTTP adapter) can
branch on the kind of failure instead of parsing messages:

    WorkflowError
    +-- NotFound                  NOT_FOUND
    +-- ValidationError           VALIDATION_ERROR
    +-- AuthorizationError        FORBIDDEN
    +-- InvalidStateTransition    INVALID_STATE_TRANSITION
    +-- ConcurrentModification    CONCURRENT_MODIFICATION
    +-- UpstreamError             UPSTREAM_ERROR
    +-- ImmutableRecordError      IMMUTABLE_RECORD
"""
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    code: str = "WORKFLOW_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message}


class NotFound(WorkflowError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"entity": self.entity, "entity_id": self.entity_id})
        return data


class ValidationError(WorkflowError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class AuthorizationError(WorkflowError):
    code = "FORBIDDEN"


class InvalidStateTransition(WorkflowError):
    """The operation is not legal from the entity's current state."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, attempted: str, current: str, message: Optional[str] = None):
        self.entity = entity
        self.attempted = attempted
        self.current = current
        super().__init__(message or f"Cannot {attempted} {entity} in status '{current}'")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"entity": self.entity, "attempted": self.attempted, "current": self.current})
        return data


class ConcurrentModification(WorkflowError):
    """A conditional update lost the race; re-read and decide whether to retry."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, entity: str, entity_id: Any, expected: Dict[str, Any]):
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        super().__init__(f"{entity} {entity_id} was modified concurrently (expected {expected})")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"entity": self.entity, "entity_id": self.entity_id})
        return data


class UpstreamError(WorkflowError):
    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message)


class ImmutableRecordError(WorkflowError):
    code = "IMMUTABLE_RECORD"
