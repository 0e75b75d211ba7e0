"""
Error kinds and exceptions.

Lifecycle failures are values, not exceptions: every engine operation
returns a result carrying a LifecycleError when it is refused. Storage
failures are exceptions with structured details, surfaced to the caller
as-is so it can reload and retry the whole operation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# -----------------------------------------------------------------------------
# Lifecycle Error Kinds (closed set)
# -----------------------------------------------------------------------------
class ErrorKind(str, Enum):
    """
    Reasons a lifecycle transition is refused.

    None of these should be retried automatically except INVALID_STATE
    after reloading a fresher snapshot.
    """
    INVALID_STATE = "invalid_state"
    UNAUTHORIZED = "unauthorized"
    DEPENDENCY_NOT_MET = "dependency_not_met"
    EMPTY_REASON = "empty_reason"

    @property
    def retryable(self) -> bool:
        return self == ErrorKind.INVALID_STATE


class WarningKind(str, Enum):
    """Non-fatal conditions reported alongside a successful result."""
    CLOCK_SKEW = "clock_skew"
    SESSION_CAPPED = "session_capped"


@dataclass(frozen=True)
class LifecycleError:
    """A refused transition."""
    kind: ErrorKind
    message: str
    blocking_task_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "error": True,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.blocking_task_ids:
            data["blocking_task_ids"] = list(self.blocking_task_ids)
        return data


def invalid_state(message: str) -> LifecycleError:
    return LifecycleError(kind=ErrorKind.INVALID_STATE, message=message)


def unauthorized(actor_id: str, action: str) -> LifecycleError:
    return LifecycleError(
        kind=ErrorKind.UNAUTHORIZED,
        message=f"Actor '{actor_id}' is not allowed to {action} this task",
    )


def dependency_not_met(blocking: List[str]) -> LifecycleError:
    return LifecycleError(
        kind=ErrorKind.DEPENDENCY_NOT_MET,
        message=f"Blocked by {len(blocking)} prerequisite task(s) not yet approved: {', '.join(blocking)}",
        blocking_task_ids=tuple(blocking),
    )


def empty_reason() -> LifecycleError:
    return LifecycleError(kind=ErrorKind.EMPTY_REASON, message="A rejection reason is required")


# -----------------------------------------------------------------------------
# Store Errors
# -----------------------------------------------------------------------------
class StoreError(Exception):
    """Base storage error with structured details."""
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class TaskNotFoundError(StoreError):
    def __init__(self, task_id: str):
        super().__init__(
            code="TASK_NOT_FOUND",
            message=f"Task '{task_id}' not found",
            details={"task_id": task_id},
        )


class DefinitionNotFoundError(StoreError):
    def __init__(self, definition_id: str):
        super().__init__(
            code="DEFINITION_NOT_FOUND",
            message=f"Recurring task definition '{definition_id}' not found",
            details={"definition_id": definition_id},
        )


class PersistenceError(StoreError):
    """Opaque storage failure. Safe to retry from a freshly loaded snapshot."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="PERSISTENCE_ERROR", message=message, details=details)


class VersionConflictError(PersistenceError):
    def __init__(self, task_id: str, expected: int, actual: int):
        super().__init__(
            message=f"Task '{task_id}' was modified concurrently (expected version {expected}, found {actual})",
            details={"task_id": task_id, "expected_version": expected, "actual_version": actual},
        )
        self.code = "VERSION_CONFLICT"


class ReconciliationInProgressError(Exception):
    """Raised when a store sweep commit is started while another is running."""


class DefinitionInactiveError(Exception):
    """Raised when materializing a recurring definition that is switched off."""
    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Recurring task definition '{definition_id}' is inactive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": "DEFINITION_INACTIVE",
            "message": str(self),
            "details": {"definition_id": self.definition_id},
        }
