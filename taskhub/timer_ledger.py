"""
Timer Ledger

Per-task accumulated seconds plus an optional "running since" marker.
The elapsed-time arithmetic here is the only implementation: the lifecycle
engine uses it for live stops and the recovery reconciler uses it for
retroactive folds, so the two can never drift apart.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from .clock import ensure_aware
from .models import Task

logger = logging.getLogger("timer_ledger")

# Longest single session the recovery reconciler will charge (24 hours)
MAX_RECOVERY_SESSION_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class ElapsedTime:
    """Outcome of measuring one timer session."""
    seconds: int
    skewed: bool = False   # end preceded start; clamped to zero
    capped: bool = False   # exceeded the cap; clamped to it


def elapsed_seconds(
    started_at: datetime,
    ended_at: datetime,
    cap: Optional[int] = None,
) -> ElapsedTime:
    """
    Whole seconds between two instants.

    Never negative: an end before the start (clock set backward, stale
    fallback timestamp) yields zero with `skewed` set.
    """
    raw = (ensure_aware(ended_at) - ensure_aware(started_at)).total_seconds()
    skewed = raw < 0
    if skewed:
        raw = 0.0

    capped = cap is not None and raw > cap
    if capped:
        raw = float(cap)

    return ElapsedTime(seconds=int(round(raw)), skewed=skewed, capped=capped)


def start_timer(task: Task, owner_id: str, started_at: datetime) -> Task:
    """Set the running marker. Callers check that no timer is running."""
    return task.evolve(timer_started_at=started_at, timer_owner_id=owner_id)


def fold_timer(
    task: Task,
    ended_at: datetime,
    cap: Optional[int] = None,
) -> Tuple[Task, ElapsedTime]:
    """
    Stop a running timer and add its session to the accumulated counter.

    Returns the new snapshot and the measured session. The timer pair is
    cleared in the same step.
    """
    if task.timer_started_at is None:
        raise ValueError(f"Task {task.task_id} has no running timer")

    elapsed = elapsed_seconds(task.timer_started_at, ended_at, cap=cap)
    if elapsed.skewed:
        logger.warning(
            f"Clock skew on task {task.task_id}: stop at {ended_at.isoformat()} precedes "
            f"start at {task.timer_started_at.isoformat()}, elapsed clamped to 0"
        )

    folded = task.evolve(
        accumulated_seconds=task.accumulated_seconds + elapsed.seconds,
        timer_started_at=None,
        timer_owner_id=None,
    )
    return folded, elapsed


def running_seconds(task: Task, now: datetime) -> int:
    """Accumulated seconds including the currently running session, if any."""
    if task.timer_started_at is None:
        return task.accumulated_seconds
    return task.accumulated_seconds + elapsed_seconds(task.timer_started_at, now).seconds


def format_duration(seconds: int) -> str:
    """Render a duration the way reports show it: '2h 5m' or '12 min'."""
    if seconds <= 0:
        return "0 min"

    hours = seconds // 3600
    minutes = (seconds % 3600) // 60

    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes} min"
