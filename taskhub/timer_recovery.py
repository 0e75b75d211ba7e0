"""
Timer Recovery Reconciler

Corrective batch job for tasks that reached a terminal state (approved or
cancelled) through a path that bypassed the engine's timer-stop guarantee,
for example a direct status write. Such tasks still carry
`timer_started_at`; the reconciler folds the unaccounted session back into
`accumulated_seconds` and clears the timer.

Rules:
- Only terminal tasks with a running timer are candidates. Active tasks
  with a running timer are legitimate and never touched.
- Session end: recorded status-change instant, else the last approval
  (approved) or cancelled_at (cancelled), else updated_at.
- Elapsed time uses the same timer_ledger fold as a live stop, clamped to
  zero on skew and capped at 24 hours per session.
- Preview and commit run the same planning code; commit additionally saves.
- Idempotent: a committed task no longer has a timer, so a second sweep
  finds nothing to do.
- Single flight: overlapping commits would double-fold, so a commit while
  another is running raises ReconciliationInProgressError.
- Cancellation is checked between tasks only; a task is never left
  half-reconciled.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from . import approval_ledger, timer_ledger
from .errors import PersistenceError, ReconciliationInProgressError, WarningKind
from .models import Task, TaskStatus
from .timer_ledger import MAX_RECOVERY_SESSION_SECONDS

logger = logging.getLogger("timer_recovery")

# Commits must never overlap, across reconciler instances in this process
_SWEEP_LOCK = threading.Lock()


# -----------------------------------------------------------------------------
# Report Data Classes
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RecoveryEntry:
    """Correction computed for one task."""
    task_id: str
    title: str
    status: str
    timer_started_at: datetime
    end_instant: datetime
    end_source: str
    recovered_seconds: int
    previous_seconds: int
    new_seconds: int
    capped: bool = False
    skewed: bool = False

    @property
    def warnings(self) -> Tuple[WarningKind, ...]:
        warnings = []
        if self.skewed:
            warnings.append(WarningKind.CLOCK_SKEW)
        if self.capped:
            warnings.append(WarningKind.SESSION_CAPPED)
        return tuple(warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "status": self.status,
            "timer_started_at": self.timer_started_at.isoformat(),
            "end_instant": self.end_instant.isoformat(),
            "end_source": self.end_source,
            "recovered_seconds": self.recovered_seconds,
            "previous_seconds": self.previous_seconds,
            "new_seconds": self.new_seconds,
            "capped": self.capped,
            "skewed": self.skewed,
            "warnings": [w.value for w in self.warnings],
        }


@dataclass
class ReconciliationReport:
    """Summary returned by both preview and commit."""
    dry_run: bool
    total_scanned: int = 0
    candidates_found: int = 0
    recovered_seconds: int = 0
    errors: List[str] = field(default_factory=list)
    entries: List[Any] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "total_scanned": self.total_scanned,
            "candidates_found": self.candidates_found,
            "recovered_seconds": self.recovered_seconds,
            "recovered_display": timer_ledger.format_duration(self.recovered_seconds),
            "errors": list(self.errors),
            "entries": [e.to_dict() for e in self.entries],
            "cancelled": self.cancelled,
        }


# -----------------------------------------------------------------------------
# Planning (shared by preview and commit)
# -----------------------------------------------------------------------------
def recovery_end_instant(task: Task) -> Tuple[datetime, str]:
    """Authoritative end of the unstopped session, with where it came from."""
    if task.status_changed_at is not None:
        return task.status_changed_at, "status_changed_at"

    if task.status == TaskStatus.APPROVED:
        approved_at = approval_ledger.last_approval_at(task)
        if approved_at is not None:
            return approved_at, "approvals"
    elif task.status == TaskStatus.CANCELLED and task.cancelled_at is not None:
        return task.cancelled_at, "cancelled_at"

    return task.updated_at, "updated_at"


def is_recovery_candidate(task: Task) -> bool:
    return task.is_terminal and task.timer_running


def plan_recovery(task: Task) -> Optional[Tuple[RecoveryEntry, Task]]:
    """
    Compute the correction for one task.

    Returns the report entry and the corrected snapshot, or None when the
    task is not a candidate. Pure: nothing is saved.
    """
    if not is_recovery_candidate(task):
        return None

    end_instant, end_source = recovery_end_instant(task)
    corrected, elapsed = timer_ledger.fold_timer(task, end_instant, cap=MAX_RECOVERY_SESSION_SECONDS)

    entry = RecoveryEntry(
        task_id=task.task_id,
        title=task.title or "Untitled",
        status=task.status.value,
        timer_started_at=task.timer_started_at,
        end_instant=end_instant,
        end_source=end_source,
        recovered_seconds=elapsed.seconds,
        previous_seconds=task.accumulated_seconds,
        new_seconds=corrected.accumulated_seconds,
        capped=elapsed.capped,
        skewed=elapsed.skewed,
    )
    return entry, corrected


# -----------------------------------------------------------------------------
# Store Sweep
# -----------------------------------------------------------------------------
class StoreSweep:
    """
    Preview/commit batch correction over every stored task.

    Subclasses supply `plan(task)`, returning (entry, corrected task) or
    None. `preview()` reports what `commit()` would do without writing.
    """

    name = "Sweep"

    def __init__(self, store, sweep_lock: threading.Lock):
        self._store = store
        self._sweep_lock = sweep_lock

    @property
    def is_running(self) -> bool:
        return self._sweep_lock.locked()

    def plan(self, task: Task) -> Optional[Tuple[Any, Task]]:
        raise NotImplementedError

    def preview(self, cancel_event: Optional[threading.Event] = None) -> ReconciliationReport:
        """Dry run: same selection and arithmetic as commit, no writes."""
        return self._sweep(dry_run=True, cancel_event=cancel_event)

    def commit(self, cancel_event: Optional[threading.Event] = None) -> ReconciliationReport:
        """Apply the corrections. Raises ReconciliationInProgressError if a commit is running."""
        if not self._sweep_lock.acquire(blocking=False):
            raise ReconciliationInProgressError(f"A {self.name.lower()} sweep is already running")
        try:
            return self._sweep(dry_run=False, cancel_event=cancel_event)
        finally:
            self._sweep_lock.release()

    def _record(self, report: ReconciliationReport, entry: Any, dry_run: bool) -> None:
        report.entries.append(entry)
        logger.info(f"[{self.name}] Task {entry.task_id}: {'would update' if dry_run else 'updated'}")

    def _sweep(self, dry_run: bool, cancel_event: Optional[threading.Event]) -> ReconciliationReport:
        report = ReconciliationReport(dry_run=dry_run)
        mode = "preview" if dry_run else "commit"

        records = self._store.iter_task_records()
        logger.info(f"[{self.name}] {mode}: scanning {len(records)} tasks")

        for record in records:
            # Checkpoint between tasks only
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.warning(f"[{self.name}] {mode} cancelled after {report.total_scanned} tasks")
                break

            report.total_scanned += 1
            task_id = record.get("task_id", "<unknown>") if isinstance(record, dict) else "<unknown>"

            try:
                task = Task.from_dict(record)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                message = f"Task {task_id}: malformed record ({e})"
                report.errors.append(message)
                logger.error(f"[{self.name}] {message}")
                continue

            planned = self.plan(task)
            if planned is None:
                continue

            entry, corrected = planned
            report.candidates_found += 1

            if not dry_run:
                try:
                    self._store.save_task(corrected)
                except PersistenceError as e:
                    message = f"Task {task_id}: could not save correction ({e.message})"
                    report.errors.append(message)
                    logger.error(f"[{self.name}] {message}")
                    continue

            self._record(report, entry, dry_run)

        logger.info(
            f"[{self.name}] {mode} done: {report.candidates_found} candidates, "
            f"{len(report.entries)} {'planned' if dry_run else 'applied'}, {len(report.errors)} errors"
        )
        return report


# -----------------------------------------------------------------------------
# Reconciler
# -----------------------------------------------------------------------------
class TimerRecoveryReconciler(StoreSweep):
    """Scans the task store and folds timers left running on terminal tasks."""

    name = "Timer Recovery"

    def __init__(self, store, sweep_lock: Optional[threading.Lock] = None):
        super().__init__(store, sweep_lock or _SWEEP_LOCK)

    def plan(self, task: Task) -> Optional[Tuple[RecoveryEntry, Task]]:
        return plan_recovery(task)

    def _record(self, report: ReconciliationReport, entry: RecoveryEntry, dry_run: bool) -> None:
        if entry.capped:
            logger.warning(f"[{self.name}] Task {entry.task_id}: session longer than 24h, capped")
        if entry.skewed:
            logger.warning(f"[{self.name}] Task {entry.task_id}: end precedes timer start, recovered 0s")

        report.entries.append(entry)
        report.recovered_seconds += entry.recovered_seconds
        logger.info(
            f"[{self.name}] Task {entry.task_id}: {'would recover' if dry_run else 'recovered'} "
            f"{timer_ledger.format_duration(entry.recovered_seconds)} (from {entry.end_source})"
        )
