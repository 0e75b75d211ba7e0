"""
Approval Ledger

Ordered (approver, timestamp) sign-offs attached to a task, and the
collaborator interfaces consulted when they change: who may approve, and
which attachments count as approval evidence.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .models import Approval, Attachment, Task, TaskStatus


# -----------------------------------------------------------------------------
# Pending Reason Enum
# -----------------------------------------------------------------------------
class PendingReason(str, Enum):
    """Why a task in pending_approval has not been approved yet."""
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_SECOND_APPROVAL = "awaiting_second_approval"


def required_approvals(task: Task) -> int:
    """Number of distinct sign-offs needed before a task is approved."""
    return 2 if task.requires_two_step_approval else 1


def has_signed(task: Task, approver_id: str) -> bool:
    return any(a.approver_id == approver_id for a in task.approvals)


def record_approval(task: Task, approver_id: str, timestamp: datetime) -> Task:
    """Append a sign-off. Callers enforce sequencing and distinctness."""
    return task.evolve(approvals=task.approvals + (Approval(approver_id, timestamp),))


def approvals_satisfied(task: Task) -> bool:
    return len(task.approvals) >= required_approvals(task)


def last_approval_at(task: Task) -> Optional[datetime]:
    if not task.approvals:
        return None
    return task.approvals[-1].timestamp


def approval_progress(task: Task) -> Dict[str, Any]:
    """Summary used by "pending since" displays."""
    progress: Dict[str, Any] = {
        "task_id": task.task_id,
        "status": task.status.value,
        "approver_count": len(task.approvals),
        "required_approver_count": required_approvals(task),
        "approvers": [a.approver_id for a in task.approvals],
        "pending_reason": None,
        "pending_since": None,
    }
    if task.status == TaskStatus.PENDING_APPROVAL:
        progress["pending_reason"] = (
            PendingReason.AWAITING_SECOND_APPROVAL.value if task.approvals
            else PendingReason.AWAITING_APPROVAL.value
        )
        since = task.status_changed_at or task.updated_at
        progress["pending_since"] = since.isoformat() if since else None
    return progress


# -----------------------------------------------------------------------------
# Capability Collaborator
# -----------------------------------------------------------------------------
class CapabilityChecker:
    """Decides whether an actor may approve or reject a task. Opaque to the engine."""

    def can_approve(self, actor_id: str, task: Task) -> bool:
        raise NotImplementedError


class StaticCapabilityChecker(CapabilityChecker):
    """Approval capability from a fixed set of actor ids."""

    def __init__(self, approver_ids: Iterable[str]):
        self._approver_ids = frozenset(approver_ids)

    def can_approve(self, actor_id: str, task: Task) -> bool:
        return actor_id in self._approver_ids


class AllowAllCapabilityChecker(CapabilityChecker):
    """Every actor may approve. Used when capability checks happen upstream."""

    def can_approve(self, actor_id: str, task: Task) -> bool:
        return True


# -----------------------------------------------------------------------------
# Attachment Collaborator
# -----------------------------------------------------------------------------
class AttachmentClassifier:
    """Decides which attachments are evidence for an approval cycle."""

    def is_approval_evidence(self, attachment: Attachment) -> bool:
        raise NotImplementedError


class TagAttachmentClassifier(AttachmentClassifier):
    """Attachments carrying the configured tag are approval evidence."""

    def __init__(self, tag: str = "approval"):
        self._tag = tag

    def is_approval_evidence(self, attachment: Attachment) -> bool:
        return attachment.tag == self._tag
