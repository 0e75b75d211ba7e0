"""
Task Lifecycle Engine

Finite-state machine governing a task from creation to final disposition.

States:
    TODO -> IN_PROGRESS -> PENDING_APPROVAL -> APPROVED
                              |
                              +-> IN_PROGRESS (rejected)
    CANCELLED is reachable from every non-terminal state.
    APPROVED and CANCELLED are terminal.

Every operation is a pure function of (task snapshot, inputs): it never
mutates the snapshot it receives and returns a TransitionResult holding
either the new snapshot plus side-effect instructions, or a typed error.
Persisting the snapshot and carrying out the instructions is the caller's
job (see task_service).

Guarantees:
- A task never reaches a terminal state with a running timer: approve and
  cancel fold the running session in the same transition, and so does
  submission for approval.
- Approval is gated on the required number of distinct approvers and on
  every prerequisite being approved, evaluated on each sign-off.
- Rejection clears the approval ledger and discards approval evidence.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from . import approval_ledger, timer_ledger
from .approval_ledger import (
    AllowAllCapabilityChecker,
    AttachmentClassifier,
    CapabilityChecker,
    TagAttachmentClassifier,
)
from .clock import Clock, SystemClock
from .dependencies import DependencyGraphView, MappingDependencyView
from .errors import (
    LifecycleError,
    WarningKind,
    dependency_not_met,
    empty_reason,
    invalid_state,
    unauthorized,
)
from .instructions import Instruction, InstructionKind, NotificationEvent, notify
from .models import Attachment, Task, TaskStatus

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logger = logging.getLogger("lifecycle_engine")

# -----------------------------------------------------------------------------
# Transition Rules
# -----------------------------------------------------------------------------

# Status changes the engine may perform
VALID_TRANSITIONS: Dict[TaskStatus, Set[TaskStatus]] = {
    TaskStatus.TODO: {TaskStatus.IN_PROGRESS, TaskStatus.PENDING_APPROVAL, TaskStatus.CANCELLED},
    TaskStatus.IN_PROGRESS: {TaskStatus.PENDING_APPROVAL, TaskStatus.CANCELLED},
    TaskStatus.PENDING_APPROVAL: {TaskStatus.APPROVED, TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED},
    TaskStatus.APPROVED: set(),   # Terminal
    TaskStatus.CANCELLED: set(),  # Terminal
}

# Statuses from which work can be submitted for review
SUBMITTABLE_STATES: Set[TaskStatus] = {TaskStatus.TODO, TaskStatus.IN_PROGRESS}


class CommandType(str, Enum):
    START_TIMER = "start_timer"
    STOP_TIMER = "stop_timer"
    SUBMIT_FOR_APPROVAL = "submit_for_approval"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"


@dataclass(frozen=True)
class LifecycleCommand:
    """A requested transition, as consumed by `TaskLifecycleEngine.apply`."""
    command_type: CommandType
    actor_id: str
    now: Optional[datetime] = None
    reason: str = ""
    attachments: Tuple[Attachment, ...] = ()


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of a lifecycle operation.

    On success `task` is the new snapshot. On failure `task` is the
    unchanged input snapshot and `error` says why.
    """
    task: Task
    instructions: Tuple[Instruction, ...] = ()
    warnings: Tuple[WarningKind, ...] = ()
    error: Optional[LifecycleError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(
        cls,
        task: Task,
        instructions: Iterable[Instruction] = (),
        warnings: Iterable[WarningKind] = (),
    ) -> "TransitionResult":
        return cls(task=task, instructions=tuple(instructions), warnings=tuple(warnings))

    @classmethod
    def failure(cls, task: Task, error: LifecycleError) -> "TransitionResult":
        return cls(task=task, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "task": self.task.to_dict(),
            "instructions": [i.to_dict() for i in self.instructions],
            "warnings": [w.value for w in self.warnings],
            "error": self.error.to_dict() if self.error else None,
        }


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def is_project_complete(tasks: Iterable[Task]) -> bool:
    """
    True when every non-cancelled task of a project is approved.

    A project with no tasks, or with only cancelled ones, is not complete.
    """
    active = [t for t in tasks if t.status != TaskStatus.CANCELLED]
    if not active:
        return False
    return all(t.status == TaskStatus.APPROVED for t in active)


def available_actions(task: Task) -> List[str]:
    """Actions a client may offer for the task's current state."""
    if task.is_terminal:
        return []

    actions = ["stop_timer"] if task.timer_running else ["start_timer"]
    if task.status in SUBMITTABLE_STATES:
        actions.append("submit_for_approval")
    if task.status == TaskStatus.PENDING_APPROVAL:
        actions.extend(["approve", "reject"])
    actions.append("cancel")
    return actions


# -----------------------------------------------------------------------------
# Lifecycle Engine
# -----------------------------------------------------------------------------
class TaskLifecycleEngine:
    """
    Pure reducer over task snapshots.

    Collaborators are injected: the clock supplies `now` when a caller does
    not pass one, the capability checker decides who may approve/reject,
    the attachment classifier decides which attachments are approval
    evidence, and the dependency view reports prerequisite statuses.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        capability: Optional[CapabilityChecker] = None,
        attachment_classifier: Optional[AttachmentClassifier] = None,
        dependency_view: Optional[DependencyGraphView] = None,
        require_attachment_on_submit: bool = False,
    ):
        self.clock = clock or SystemClock()
        self.capability = capability or AllowAllCapabilityChecker()
        self.attachment_classifier = attachment_classifier or TagAttachmentClassifier()
        self.dependency_view = dependency_view or MappingDependencyView()
        self.require_attachment_on_submit = require_attachment_on_submit

    # -------------------------------------------------------------------------
    # Reducer Entry Point
    # -------------------------------------------------------------------------

    def apply(self, task: Task, command: LifecycleCommand) -> TransitionResult:
        """Apply one command to a snapshot."""
        ct = command.command_type
        if ct == CommandType.START_TIMER:
            return self.start_timer(task, command.actor_id, now=command.now)
        if ct == CommandType.STOP_TIMER:
            return self.stop_timer(task, now=command.now, actor_id=command.actor_id)
        if ct == CommandType.SUBMIT_FOR_APPROVAL:
            return self.submit_for_approval(
                task, command.actor_id, now=command.now, attachments=command.attachments
            )
        if ct == CommandType.APPROVE:
            return self.approve(task, command.actor_id, now=command.now)
        if ct == CommandType.REJECT:
            return self.reject(task, command.actor_id, command.reason, now=command.now)
        if ct == CommandType.CANCEL:
            return self.cancel(task, actor_id=command.actor_id, now=command.now)
        raise ValueError(f"Unhandled command type: {ct}")

    # -------------------------------------------------------------------------
    # Timer Operations
    # -------------------------------------------------------------------------

    def start_timer(self, task: Task, actor_id: str, now: Optional[datetime] = None) -> TransitionResult:
        """
        Start tracking time on a task.

        Only one timer may run per task. Starting work on a TODO task also
        moves it to IN_PROGRESS.
        """
        now = self._now(now)

        if task.is_terminal:
            return self._refuse(task, "start_timer", invalid_state(
                f"Cannot start a timer on a {task.status.value} task"
            ))
        if task.timer_running:
            return self._refuse(task, "start_timer", invalid_state(
                f"A timer is already running on this task (started by {task.timer_owner_id} "
                f"at {task.timer_started_at.isoformat()})"
            ))

        updated = timer_ledger.start_timer(task, actor_id, now).evolve(updated_at=now)
        instructions: List[Instruction] = []

        if task.status == TaskStatus.TODO:
            updated = self._change_status(updated, TaskStatus.IN_PROGRESS, now)
            instructions.append(notify(NotificationEvent.TASK_STARTED, task.task_id, actor_id))

        logger.info(f"Timer started on task {task.task_id} by {actor_id}")
        return TransitionResult.success(updated, instructions)

    def stop_timer(
        self,
        task: Task,
        now: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> TransitionResult:
        """Stop the running timer and fold its session into the accumulated total."""
        now = self._now(now)

        if not task.timer_running:
            return self._refuse(task, "stop_timer", invalid_state("No timer is running on this task"))

        updated, warnings = self._fold_running_timer(task, now)
        logger.info(
            f"Timer stopped on task {task.task_id} by {actor_id or task.timer_owner_id}: "
            f"total {updated.accumulated_seconds}s"
        )
        return TransitionResult.success(updated.evolve(updated_at=now), warnings=warnings)

    # -------------------------------------------------------------------------
    # Approval Workflow
    # -------------------------------------------------------------------------

    def submit_for_approval(
        self,
        task: Task,
        actor_id: str,
        now: Optional[datetime] = None,
        attachments: Iterable[Attachment] = (),
    ) -> TransitionResult:
        """
        Signal that work is ready for review.

        A running timer is stopped first. Dependencies are not checked here;
        gating applies to approval only. Existing attachments are kept and
        new ones appended. Starts a new approval cycle, so any previous
        rejection reason is cleared.
        """
        now = self._now(now)

        if task.status not in SUBMITTABLE_STATES:
            return self._refuse(task, "submit_for_approval", invalid_state(
                f"Cannot submit a {task.status.value} task for approval"
            ))

        combined = task.attachments + tuple(attachments)
        if self.require_attachment_on_submit and not task.skip_attachment_on_approval and not combined:
            return self._refuse(task, "submit_for_approval", invalid_state(
                "At least one attachment or link is required before submitting for approval"
            ))

        updated, warnings = self._fold_running_timer(task, now)
        updated = updated.evolve(attachments=combined, rejection_reason=None)
        updated = self._change_status(updated, TaskStatus.PENDING_APPROVAL, now)

        instructions = [notify(
            NotificationEvent.TASK_APPROVAL_REQUESTED,
            task.task_id,
            actor_id,
            required_approver_count=approval_ledger.required_approvals(task),
            accumulated_seconds=updated.accumulated_seconds,
        )]

        logger.info(f"Task {task.task_id} submitted for approval by {actor_id}")
        return TransitionResult.success(updated, instructions, warnings)

    def approve(
        self,
        task: Task,
        actor_id: str,
        now: Optional[datetime] = None,
        dependency_view: Optional[DependencyGraphView] = None,
    ) -> TransitionResult:
        """
        Record a sign-off and approve the task once enough are collected.

        Refused when the actor lacks approval capability, has already signed
        this cycle, or any prerequisite is not approved yet. The dependency
        check runs on every sign-off, including the second of a two-step
        approval.
        """
        now = self._now(now)
        view = dependency_view or self.dependency_view

        if task.status != TaskStatus.PENDING_APPROVAL:
            return self._refuse(task, "approve", invalid_state(
                f"Only tasks pending approval can be approved (status: {task.status.value})"
            ))
        if not self.capability.can_approve(actor_id, task):
            return self._refuse(task, "approve", unauthorized(actor_id, "approve"))
        if approval_ledger.has_signed(task, actor_id):
            return self._refuse(task, "approve", invalid_state(
                f"Actor '{actor_id}' has already approved this task; a different approver is required"
            ))

        blocking = view.blocking_dependencies(task)
        if blocking:
            return self._refuse(task, "approve", dependency_not_met(blocking))

        updated = approval_ledger.record_approval(task, actor_id, now).evolve(updated_at=now)
        required = approval_ledger.required_approvals(task)

        if not approval_ledger.approvals_satisfied(updated):
            logger.info(
                f"Approval {len(updated.approvals)}/{required} recorded on task {task.task_id} by {actor_id}"
            )
            return TransitionResult.success(updated, [notify(
                NotificationEvent.TASK_APPROVAL_RECORDED,
                task.task_id,
                actor_id,
                approver_count=len(updated.approvals),
                required_approver_count=required,
            )])

        # Should not normally be running here; folded so the task cannot end with a live timer
        updated, warnings = self._fold_running_timer(updated, now)
        updated = self._change_status(updated, TaskStatus.APPROVED, now)

        instructions = [notify(
            NotificationEvent.TASK_APPROVED,
            task.task_id,
            actor_id,
            approvers=[a.approver_id for a in updated.approvals],
        )]
        if task.project_id:
            instructions.append(Instruction(
                kind=InstructionKind.CHECK_PROJECT_COMPLETION,
                task_id=task.task_id,
                actor_id=actor_id,
                details={"project_id": task.project_id},
            ))

        logger.info(f"Task {task.task_id} approved ({len(updated.approvals)}/{required})")
        return TransitionResult.success(updated, instructions, warnings)

    def reject(
        self,
        task: Task,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Send a task back to IN_PROGRESS.

        Clears the approval ledger and drops approval evidence so the next
        submission has to supply fresh evidence.
        """
        now = self._now(now)

        if task.status != TaskStatus.PENDING_APPROVAL:
            return self._refuse(task, "reject", invalid_state(
                f"Only tasks pending approval can be rejected (status: {task.status.value})"
            ))
        if not self.capability.can_approve(actor_id, task):
            return self._refuse(task, "reject", unauthorized(actor_id, "reject"))
        if not reason or not reason.strip():
            return self._refuse(task, "reject", empty_reason())

        kept = []
        discarded = []
        for attachment in task.attachments:
            if self.attachment_classifier.is_approval_evidence(attachment):
                discarded.append(attachment)
            else:
                kept.append(attachment)

        updated = task.evolve(
            approvals=(),
            rejection_reason=reason.strip(),
            attachments=tuple(kept),
        )
        updated = self._change_status(updated, TaskStatus.IN_PROGRESS, now)

        instructions = [notify(
            NotificationEvent.TASK_REJECTED,
            task.task_id,
            actor_id,
            reason=reason.strip(),
        )]
        for attachment in discarded:
            instructions.append(Instruction(
                kind=InstructionKind.DISCARD_ATTACHMENT,
                task_id=task.task_id,
                actor_id=actor_id,
                details=attachment.to_dict(),
            ))

        logger.info(
            f"Task {task.task_id} rejected by {actor_id}; {len(discarded)} evidence attachment(s) discarded"
        )
        return TransitionResult.success(updated, instructions)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(
        self,
        task: Task,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Cancel a non-terminal task, folding any running timer first."""
        now = self._now(now)

        if task.is_terminal:
            return self._refuse(task, "cancel", invalid_state(
                f"Cannot cancel a {task.status.value} task"
            ))

        updated, warnings = self._fold_running_timer(task, now)
        updated = self._change_status(updated, TaskStatus.CANCELLED, now).evolve(cancelled_at=now)

        logger.info(f"Task {task.task_id} cancelled by {actor_id or 'system'}")
        return TransitionResult.success(
            updated,
            [notify(NotificationEvent.TASK_CANCELLED, task.task_id, actor_id)],
            warnings,
        )

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock.now()

    def _change_status(self, task: Task, target: TaskStatus, now: datetime) -> Task:
        if not can_transition(task.status, target):
            # Guarded by every operation above; reaching this is a programming error
            raise ValueError(f"Invalid transition: {task.status.value} -> {target.value}")

        logger.debug(f"Task {task.task_id}: {task.status.value} -> {target.value}")
        return task.evolve(status=target, updated_at=now, status_changed_at=now)

    def _fold_running_timer(self, task: Task, now: datetime) -> Tuple[Task, Tuple[WarningKind, ...]]:
        if not task.timer_running:
            return task, ()
        folded, elapsed = timer_ledger.fold_timer(task, now)
        warnings = (WarningKind.CLOCK_SKEW,) if elapsed.skewed else ()
        return folded, warnings

    def _refuse(self, task: Task, operation: str, error: LifecycleError) -> TransitionResult:
        logger.info(f"Refused {operation} on task {task.task_id}: [{error.kind.value}] {error.message}")
        return TransitionResult.failure(task, error)
