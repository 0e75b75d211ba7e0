"""
Side-effect instructions.

The lifecycle engine never talks to notification, file or project
collaborators. It describes what should happen as a list of Instructions,
and the caller dispatches them after the new snapshot has been persisted.
Delivery itself (email, sound, in-app) belongs to the registered handlers.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("instructions")


class InstructionKind(str, Enum):
    NOTIFY = "notify"
    DISCARD_ATTACHMENT = "discard_attachment"
    CHECK_PROJECT_COMPLETION = "check_project_completion"


class NotificationEvent(str, Enum):
    """Events the notification collaborator may be asked to announce."""
    TASK_STARTED = "task_started"
    TASK_APPROVAL_REQUESTED = "task_approval_requested"
    TASK_APPROVAL_RECORDED = "task_approval_recorded"
    TASK_APPROVED = "task_approved"
    TASK_REJECTED = "task_rejected"
    TASK_CANCELLED = "task_cancelled"
    TASK_CREATED_FROM_RECURRENCE = "task_created_from_recurrence"
    PROJECT_COMPLETED = "project_completed"


@dataclass(frozen=True)
class Instruction:
    """One side effect for a collaborator to carry out."""
    kind: InstructionKind
    task_id: str
    actor_id: Optional[str] = None
    event: Optional[NotificationEvent] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "event": self.event.value if self.event else None,
            "task_id": self.task_id,
            "actor_id": self.actor_id,
            "details": dict(self.details),
        }


def notify(
    event: NotificationEvent,
    task_id: str,
    actor_id: Optional[str] = None,
    **details: Any,
) -> Instruction:
    return Instruction(
        kind=InstructionKind.NOTIFY,
        task_id=task_id,
        actor_id=actor_id,
        event=event,
        details=details,
    )


InstructionHandler = Callable[[Instruction], None]


@dataclass
class DispatchReport:
    """Outcome of dispatching one batch of instructions."""
    delivered: int = 0
    unhandled: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivered": self.delivered,
            "unhandled": self.unhandled,
            "failures": list(self.failures),
        }


class InstructionDispatcher:
    """
    Routes instructions to handlers registered per kind.

    A failing handler is logged and reported; it never stops the remaining
    instructions and never reaches back into the already-persisted snapshot.
    """

    def __init__(self):
        self._handlers: Dict[InstructionKind, List[InstructionHandler]] = {}

    def register(self, kind: InstructionKind, handler: InstructionHandler) -> None:
        self._handlers.setdefault(kind, []).append(handler)
        logger.debug(f"Registered handler for {kind.value}: {getattr(handler, '__name__', handler)}")

    def dispatch(self, instructions: List[Instruction]) -> DispatchReport:
        report = DispatchReport()
        for instruction in instructions:
            handlers = self._handlers.get(instruction.kind, [])
            if not handlers:
                report.unhandled += 1
                logger.debug(f"No handler for {instruction.kind.value} on task {instruction.task_id}")
                continue

            for handler in handlers:
                try:
                    handler(instruction)
                    report.delivered += 1
                except Exception as e:
                    logger.error(
                        f"Handler for {instruction.kind.value} failed on task {instruction.task_id}: {e}"
                    )
                    report.failures.append({
                        "instruction": instruction.to_dict(),
                        "error": str(e),
                    })
        return report


def log_instruction(instruction: Instruction) -> None:
    """Default handler: record the instruction in the log."""
    label = instruction.event.value if instruction.event else instruction.kind.value
    logger.info(f"Instruction {label} for task {instruction.task_id} (actor: {instruction.actor_id})")
