"""
Domain model for the task lifecycle.

Tasks are immutable value objects: the lifecycle engine produces a new
snapshot for every accepted transition and never mutates the one it was
given. Collections are stored as tuples for the same reason.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from .clock import ensure_aware, format_instant, parse_instant, utc_now


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class TaskStatus(str, Enum):
    """
    Lifecycle states of a task.

    APPROVED and CANCELLED are terminal.
    """
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    CANCELLED = "cancelled"

    @classmethod
    def terminal_states(cls) -> Set["TaskStatus"]:
        return {cls.APPROVED, cls.CANCELLED}

    @property
    def is_terminal(self) -> bool:
        return self in TaskStatus.terminal_states()

    @classmethod
    def parse(cls, value: Any) -> "TaskStatus":
        """Accept enum values and the labels used by stored legacy documents."""
        if isinstance(value, TaskStatus):
            return value
        if value in LEGACY_STATUS_LABELS:
            return LEGACY_STATUS_LABELS[value]
        return cls(value)


# Labels written by the original hub UI
LEGACY_STATUS_LABELS: Dict[str, TaskStatus] = {
    "Da Fare": TaskStatus.TODO,
    "In Lavorazione": TaskStatus.IN_PROGRESS,
    "In Approvazione": TaskStatus.PENDING_APPROVAL,
    "In Approvazione Cliente": TaskStatus.PENDING_APPROVAL,
    "Approvato": TaskStatus.APPROVED,
    "Annullato": TaskStatus.CANCELLED,
}


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: Any) -> "TaskPriority":
        if isinstance(value, TaskPriority):
            return value
        if value in LEGACY_PRIORITY_LABELS:
            return LEGACY_PRIORITY_LABELS[value]
        return cls(value)


LEGACY_PRIORITY_LABELS: Dict[str, TaskPriority] = {
    "Bassa": TaskPriority.LOW,
    "Media": TaskPriority.MEDIUM,
    "Alta": TaskPriority.HIGH,
    "Critica": TaskPriority.CRITICAL,
}


class RecurrenceType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# -----------------------------------------------------------------------------
# Task Data Classes
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Approval:
    """One sign-off in a task's approval ledger."""
    approver_id: str
    timestamp: datetime

    def __post_init__(self):
        object.__setattr__(self, "timestamp", ensure_aware(self.timestamp))

    def to_dict(self) -> Dict[str, Any]:
        return {"approver_id": self.approver_id, "timestamp": format_instant(self.timestamp)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Approval":
        return cls(
            approver_id=data.get("approver_id") or data["userId"],
            timestamp=parse_instant(data["timestamp"]),
        )


@dataclass(frozen=True)
class Attachment:
    """
    File or link attached to a task.

    The engine never touches file contents; `tag` is what the attachment
    classifier looks at to decide whether it is approval evidence.
    """
    attachment_id: str
    name: str
    url: str = ""
    tag: Optional[str] = None
    uploaded_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attachment_id": self.attachment_id,
            "name": self.name,
            "url": self.url,
            "tag": self.tag,
            "uploaded_by": self.uploaded_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            attachment_id=data["attachment_id"],
            name=data.get("name", ""),
            url=data.get("url", ""),
            tag=data.get("tag"),
            uploaded_by=data.get("uploaded_by"),
        )


@dataclass(frozen=True)
class Task:
    """
    A unit of trackable work.

    Timer ledger: `accumulated_seconds` plus the running marker
    (`timer_started_at`, `timer_owner_id`), which is set or cleared as a pair.
    Approval ledger: `approvals`, append-only until a rejection clears it.
    """
    task_id: str
    title: str
    status: TaskStatus = TaskStatus.TODO
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    activity_type: Optional[str] = None
    created_by: Optional[str] = None
    due_date: Optional[datetime] = None
    # Approval ledger
    requires_two_step_approval: bool = False
    approvals: Tuple[Approval, ...] = ()
    dependencies: Tuple[str, ...] = ()
    rejection_reason: Optional[str] = None
    attachments: Tuple[Attachment, ...] = ()
    skip_attachment_on_approval: bool = False
    # Timer ledger
    accumulated_seconds: int = 0
    timer_started_at: Optional[datetime] = None
    timer_owner_id: Optional[str] = None
    estimated_minutes: int = 0
    # Timestamps
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    # Provenance and storage
    source_definition_id: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        object.__setattr__(self, "status", TaskStatus.parse(self.status))
        object.__setattr__(self, "priority", TaskPriority.parse(self.priority))
        object.__setattr__(self, "approvals", tuple(self.approvals))
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "attachments", tuple(self.attachments))
        object.__setattr__(self, "created_at", ensure_aware(self.created_at))
        for name in ("updated_at", "status_changed_at", "cancelled_at", "timer_started_at", "due_date"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, ensure_aware(value))
        if self.updated_at is None:
            object.__setattr__(self, "updated_at", self.created_at)

        if self.accumulated_seconds < 0:
            raise ValueError(f"accumulated_seconds cannot be negative: {self.accumulated_seconds}")
        if self.estimated_minutes < 0:
            raise ValueError(f"estimated_minutes cannot be negative: {self.estimated_minutes}")
        if (self.timer_started_at is None) != (self.timer_owner_id is None):
            raise ValueError("timer_started_at and timer_owner_id must be set or cleared together")

    @property
    def timer_running(self) -> bool:
        return self.timer_started_at is not None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def evolve(self, **changes) -> "Task":
        """Return a copy with the given fields changed."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "status": self.status.value,
            "description": self.description,
            "priority": self.priority.value,
            "client_id": self.client_id,
            "project_id": self.project_id,
            "assigned_user_id": self.assigned_user_id,
            "activity_type": self.activity_type,
            "created_by": self.created_by,
            "due_date": format_instant(self.due_date),
            "requires_two_step_approval": self.requires_two_step_approval,
            "approvals": [a.to_dict() for a in self.approvals],
            "dependencies": list(self.dependencies),
            "rejection_reason": self.rejection_reason,
            "attachments": [a.to_dict() for a in self.attachments],
            "skip_attachment_on_approval": self.skip_attachment_on_approval,
            "accumulated_seconds": self.accumulated_seconds,
            "timer_started_at": format_instant(self.timer_started_at),
            "timer_owner_id": self.timer_owner_id,
            "estimated_minutes": self.estimated_minutes,
            "created_at": format_instant(self.created_at),
            "updated_at": format_instant(self.updated_at),
            "status_changed_at": format_instant(self.status_changed_at),
            "cancelled_at": format_instant(self.cancelled_at),
            "source_definition_id": self.source_definition_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize from dictionary. Raises ValueError/KeyError on malformed records."""
        return cls(
            task_id=data["task_id"],
            title=data.get("title", ""),
            status=TaskStatus.parse(data.get("status", TaskStatus.TODO.value)),
            description=data.get("description") or "",
            priority=TaskPriority.parse(data.get("priority", TaskPriority.MEDIUM.value)),
            client_id=data.get("client_id"),
            project_id=data.get("project_id"),
            assigned_user_id=data.get("assigned_user_id"),
            activity_type=data.get("activity_type"),
            created_by=data.get("created_by"),
            due_date=parse_instant(data.get("due_date")),
            requires_two_step_approval=bool(data.get("requires_two_step_approval", False)),
            approvals=tuple(Approval.from_dict(a) for a in data.get("approvals") or []),
            dependencies=tuple(data.get("dependencies") or []),
            rejection_reason=data.get("rejection_reason"),
            attachments=tuple(Attachment.from_dict(a) for a in data.get("attachments") or []),
            skip_attachment_on_approval=bool(data.get("skip_attachment_on_approval", False)),
            accumulated_seconds=int(data.get("accumulated_seconds") or 0),
            timer_started_at=parse_instant(data.get("timer_started_at")),
            timer_owner_id=data.get("timer_owner_id"),
            estimated_minutes=int(data.get("estimated_minutes") or 0),
            created_at=parse_instant(data["created_at"]),
            updated_at=parse_instant(data.get("updated_at")),
            status_changed_at=parse_instant(data.get("status_changed_at")),
            cancelled_at=parse_instant(data.get("cancelled_at")),
            source_definition_id=data.get("source_definition_id"),
            version=int(data.get("version", 0)),
        )


# -----------------------------------------------------------------------------
# Recurrence Data Classes
# -----------------------------------------------------------------------------
_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class RecurrenceRule:
    """
    Cadence of a recurring-task template.

    day_of_week follows the hub's convention: 0 = Sunday ... 6 = Saturday.
    week_of_month selects the Nth occurrence of that weekday (1-5).
    """
    type: RecurrenceType
    time: str = "09:00"
    day_of_week: Optional[int] = None
    week_of_month: Optional[int] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        object.__setattr__(self, "type", RecurrenceType(self.type))
        if not _TIME_PATTERN.match(self.time or ""):
            raise ValueError(f"time must be HH:MM, got {self.time!r}")

        if self.type in (RecurrenceType.WEEKLY, RecurrenceType.MONTHLY):
            if self.day_of_week is None:
                raise ValueError(f"{self.type.value} rules require day_of_week")
            if not 0 <= self.day_of_week <= 6:
                raise ValueError(f"day_of_week must be 0-6, got {self.day_of_week}")

        if self.type == RecurrenceType.MONTHLY:
            if self.week_of_month is None:
                raise ValueError("monthly rules require week_of_month")
            if not 1 <= self.week_of_month <= 5:
                raise ValueError(f"week_of_month must be 1-5, got {self.week_of_month}")

    @property
    def hour(self) -> int:
        return int(self.time[:2])

    @property
    def minute(self) -> int:
        return int(self.time[3:])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "time": self.time,
            "day_of_week": self.day_of_week,
            "week_of_month": self.week_of_month,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrenceRule":
        return cls(
            type=RecurrenceType(data["type"]),
            time=data.get("time") or "09:00",
            day_of_week=data.get("day_of_week"),
            week_of_month=data.get("week_of_month"),
            end_date=date.fromisoformat(data["end_date"]) if data.get("end_date") else None,
        )


@dataclass(frozen=True)
class RecurringTaskDefinition:
    """
    Template for recurring work. Owns no runtime state.

    Template fields are copied verbatim into every materialized task.
    """
    definition_id: str
    title: str
    recurrence: RecurrenceRule
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    activity_type: Optional[str] = None
    assigned_user_id: Optional[str] = None
    estimated_minutes: int = 0
    requires_two_step_approval: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "priority", TaskPriority.parse(self.priority))
        if self.estimated_minutes < 0:
            raise ValueError(f"estimated_minutes cannot be negative: {self.estimated_minutes}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "definition_id": self.definition_id,
            "title": self.title,
            "recurrence": self.recurrence.to_dict(),
            "description": self.description,
            "priority": self.priority.value,
            "client_id": self.client_id,
            "project_id": self.project_id,
            "activity_type": self.activity_type,
            "assigned_user_id": self.assigned_user_id,
            "estimated_minutes": self.estimated_minutes,
            "requires_two_step_approval": self.requires_two_step_approval,
            "is_active": self.is_active,
            "created_at": format_instant(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurringTaskDefinition":
        return cls(
            definition_id=data["definition_id"],
            title=data["title"],
            recurrence=RecurrenceRule.from_dict(data["recurrence"]),
            description=data.get("description") or "",
            priority=TaskPriority.parse(data.get("priority", TaskPriority.MEDIUM.value)),
            client_id=data.get("client_id"),
            project_id=data.get("project_id"),
            activity_type=data.get("activity_type"),
            assigned_user_id=data.get("assigned_user_id"),
            estimated_minutes=int(data.get("estimated_minutes") or 0),
            requires_two_step_approval=bool(data.get("requires_two_step_approval", False)),
            is_active=bool(data.get("is_active", True)),
            created_at=parse_instant(data.get("created_at")),
        )
