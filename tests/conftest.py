"""
Pytest configuration for Task Hub tests.

This module provides:
1. A pinned clock and engine
2. A temporary JSON task store
3. Task factories and shared constants
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from taskhub.clock import FixedClock
from taskhub.config import Settings
from taskhub.lifecycle_engine import TaskLifecycleEngine
from taskhub.models import Task, TaskStatus
from taskhub.task_service import build_task_service
from taskhub.task_store import TaskStore


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
T0 = datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc)
WORKER_ID = "user-worker"
APPROVER_A = "user-approver-a"
APPROVER_B = "user-approver-b"


def make_task(task_id: str = "task-1", **overrides) -> Task:
    """Build a task snapshot created at T0 with sensible defaults."""
    values = {
        "task_id": task_id,
        "title": f"Task {task_id}",
        "client_id": "client-1",
        "created_at": T0,
    }
    values.update(overrides)
    return Task(**values)


def make_terminal_task_with_timer(
    task_id: str,
    status: TaskStatus,
    started_at: datetime,
    ended_at: datetime,
    accumulated_seconds: int = 0,
    **overrides,
) -> Task:
    """A task stuck in a terminal state with its timer still running."""
    return make_task(
        task_id,
        status=status,
        accumulated_seconds=accumulated_seconds,
        timer_started_at=started_at,
        timer_owner_id=WORKER_ID,
        updated_at=ended_at,
        status_changed_at=ended_at,
        **overrides,
    )


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def engine(clock):
    return TaskLifecycleEngine(clock=clock)


@pytest.fixture
def store_file(tmp_path) -> Path:
    return tmp_path / "tasks.json"


@pytest.fixture
def store(store_file):
    return TaskStore(store_file=store_file)


@pytest.fixture
def settings(store_file):
    return Settings(store_file=store_file)


@pytest.fixture
def service(settings, store, clock):
    return build_task_service(settings, clock=clock, store=store)

