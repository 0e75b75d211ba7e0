"""
Task Store

JSON file persistence for tasks and recurring task definitions.

This is the persistence collaborator behind the lifecycle engine:
- load_task / save_task / list_tasks
- Compare-and-set on `version`: a save based on a stale snapshot fails
  with VersionConflictError instead of silently overwriting a newer write
- Atomic writes (temp file + fsync + rename)
- Read-after-write: every read goes to the file the last write replaced

This store does NOT:
1. Validate lifecycle transitions (that's the engine's job)
2. Dispatch notifications
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .errors import (
    DefinitionNotFoundError,
    PersistenceError,
    TaskNotFoundError,
    VersionConflictError,
)
from .models import RecurringTaskDefinition, Task, TaskStatus

logger = logging.getLogger("task_store")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
STORE_VERSION = "1.0"

STORE_FILE = Path(os.getenv("TASKHUB_STORE_FILE", "data/taskhub/tasks.json"))


# -----------------------------------------------------------------------------
# Query Filter
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TaskFilter:
    """Criteria for list_tasks. Unset fields match everything."""
    statuses: Optional[Set[TaskStatus]] = None
    timer_running: Optional[bool] = None
    project_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    source_definition_id: Optional[str] = None

    def matches(self, task: Task) -> bool:
        if self.statuses is not None and task.status not in self.statuses:
            return False
        if self.timer_running is not None and task.timer_running != self.timer_running:
            return False
        if self.project_id is not None and task.project_id != self.project_id:
            return False
        if self.assigned_user_id is not None and task.assigned_user_id != self.assigned_user_id:
            return False
        if self.source_definition_id is not None and task.source_definition_id != self.source_definition_id:
            return False
        return True


# -----------------------------------------------------------------------------
# Task Store
# -----------------------------------------------------------------------------
class TaskStore:
    """
    File-backed store for tasks and recurring definitions.

    One JSON document holds both collections, keyed by id.
    """

    def __init__(self, store_file: Optional[Path] = None):
        self._store_file = Path(store_file) if store_file else STORE_FILE
        self._lock = threading.Lock()

    @property
    def store_file(self) -> Path:
        return self._store_file

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def load_task(self, task_id: str) -> Task:
        record = self._read_document()["tasks"].get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return self._parse_task(record)

    def save_task(self, task: Task, expected_version: Optional[int] = None) -> Task:
        """
        Persist a snapshot and return it with its new version.

        `expected_version` defaults to the version the snapshot was loaded
        with. New tasks carry version 0.
        """
        expected = task.version if expected_version is None else expected_version

        with self._lock:
            document = self._read_document()
            current = document["tasks"].get(task.task_id)
            current_version = int(current.get("version", 0)) if current else 0

            if current_version != expected:
                raise VersionConflictError(task.task_id, expected, current_version)

            stored = task.evolve(version=current_version + 1)
            document["tasks"][task.task_id] = stored.to_dict()
            self._write_document(document)

        logger.debug(f"Saved task {task.task_id} (version {stored.version})")
        return stored

    def list_tasks(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        tasks = [self._parse_task(r) for r in self._read_document()["tasks"].values()]
        if task_filter is None:
            return tasks
        return [t for t in tasks if task_filter.matches(t)]

    def iter_task_records(self) -> List[Dict[str, Any]]:
        """
        Raw stored task documents.

        Batch jobs parse these one at a time so a single malformed record
        does not abort the whole sweep.
        """
        return list(self._read_document()["tasks"].values())

    # -------------------------------------------------------------------------
    # Recurring Definitions
    # -------------------------------------------------------------------------

    def save_definition(self, definition: RecurringTaskDefinition) -> RecurringTaskDefinition:
        with self._lock:
            document = self._read_document()
            document["definitions"][definition.definition_id] = definition.to_dict()
            self._write_document(document)
        logger.debug(f"Saved recurring definition {definition.definition_id}")
        return definition

    def load_definition(self, definition_id: str) -> RecurringTaskDefinition:
        record = self._read_document()["definitions"].get(definition_id)
        if record is None:
            raise DefinitionNotFoundError(definition_id)
        try:
            return RecurringTaskDefinition.from_dict(record)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Malformed recurring definition '{definition_id}': {e}",
                {"definition_id": definition_id},
            )

    def list_definitions(self, active_only: bool = False) -> List[RecurringTaskDefinition]:
        definitions = []
        for definition_id, record in self._read_document()["definitions"].items():
            try:
                definition = RecurringTaskDefinition.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed recurring definition {definition_id}: {e}")
                continue
            if active_only and not definition.is_active:
                continue
            definitions.append(definition)
        return definitions

    def delete_definition(self, definition_id: str) -> None:
        with self._lock:
            document = self._read_document()
            if definition_id not in document["definitions"]:
                raise DefinitionNotFoundError(definition_id)
            del document["definitions"][definition_id]
            self._write_document(document)

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _parse_task(self, record: Dict[str, Any]) -> Task:
        try:
            return Task.from_dict(record)
        except (KeyError, TypeError, ValueError) as e:
            task_id = record.get("task_id", "<unknown>") if isinstance(record, dict) else "<unknown>"
            raise PersistenceError(f"Malformed task record '{task_id}': {e}", {"task_id": task_id})

    def _read_document(self) -> Dict[str, Any]:
        if not self._store_file.exists():
            return {"store_version": STORE_VERSION, "tasks": {}, "definitions": {}}

        try:
            with open(self._store_file, "r") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Could not read task store {self._store_file}: {e}")

        document.setdefault("tasks", {})
        document.setdefault("definitions", {})
        return document

    def _write_document(self, document: Dict[str, Any]) -> None:
        """Replace the store file atomically, fsync'd for durability."""
        document["store_version"] = STORE_VERSION
        tmp_file = self._store_file.with_suffix(self._store_file.suffix + ".tmp")
        try:
            self._store_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, self._store_file)
        except OSError as e:
            raise PersistenceError(f"Could not write task store {self._store_file}: {e}")

