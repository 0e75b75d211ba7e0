"""
Cancelled-At Backfill

Corrective batch job for cancelled tasks stored before `cancelled_at` was
recorded. The cancellation instant is taken from `updated_at`; records
without one load with `updated_at = created_at`, so those fall back to the
creation instant.

Runs on the same preview/commit sweep as timer recovery, so it shares its
report shape, per-task error collection, cancellation checkpoints and
single-flight commit.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .models import Task, TaskStatus
from .timer_recovery import ReconciliationReport, StoreSweep

logger = logging.getLogger("cancelled_backfill")

_BACKFILL_LOCK = threading.Lock()


@dataclass(frozen=True)
class BackfillEntry:
    task_id: str
    title: str
    cancelled_at: datetime
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "cancelled_at": self.cancelled_at.isoformat(),
            "source": self.source,
        }


def plan_backfill(task: Task) -> Optional[Tuple[BackfillEntry, Task]]:
    """Cancelled tasks missing cancelled_at get it from updated_at (else created_at)."""
    if task.status != TaskStatus.CANCELLED or task.cancelled_at is not None:
        return None

    source = "created_at" if task.updated_at == task.created_at else "updated_at"
    entry = BackfillEntry(
        task_id=task.task_id,
        title=task.title or "Untitled",
        cancelled_at=task.updated_at,
        source=source,
    )
    return entry, task.evolve(cancelled_at=task.updated_at)


class CancelledAtBackfill(StoreSweep):
    """Fills in cancelled_at on legacy cancelled tasks."""

    name = "Cancelled Backfill"

    def __init__(self, store, sweep_lock: Optional[threading.Lock] = None):
        super().__init__(store, sweep_lock or _BACKFILL_LOCK)

    def plan(self, task: Task) -> Optional[Tuple[BackfillEntry, Task]]:
        return plan_backfill(task)

    def _record(self, report: ReconciliationReport, entry: BackfillEntry, dry_run: bool) -> None:
        report.entries.append(entry)
        logger.info(
            f"[{self.name}] Task {entry.task_id}: cancelled_at "
            f"{'would be' if dry_run else 'set to'} {entry.cancelled_at.isoformat()} (from {entry.source})"
        )
