"""
Task Store Tests

Persistence, compare-and-set and error surfacing of the JSON file store.
"""

import json

import pytest

from taskhub.errors import (
    DefinitionNotFoundError,
    PersistenceError,
    TaskNotFoundError,
    VersionConflictError,
)
from taskhub.models import RecurrenceRule, RecurrenceType, RecurringTaskDefinition, TaskStatus
from taskhub.task_store import TaskFilter

from tests.conftest import T0, WORKER_ID, make_task


class TestTasks:
    """Task load/save/list."""

    def test_save_and_load(self, store):
        saved = store.save_task(make_task("t-1", description="hello"))
        loaded = store.load_task("t-1")

        assert saved.version == 1
        assert loaded == saved

    def test_missing_task(self, store):
        with pytest.raises(TaskNotFoundError) as exc_info:
            store.load_task("nope")
        assert exc_info.value.to_dict()["code"] == "TASK_NOT_FOUND"

    def test_version_increments(self, store):
        first = store.save_task(make_task("t-1"))
        second = store.save_task(first.evolve(title="renamed"))
        assert second.version == 2

    def test_stale_snapshot_conflicts(self, store):
        loaded = store.save_task(make_task("t-1"))
        store.save_task(loaded.evolve(title="writer one"))

        with pytest.raises(VersionConflictError) as exc_info:
            store.save_task(loaded.evolve(title="writer two"))

        assert isinstance(exc_info.value, PersistenceError)
        assert exc_info.value.details == {"task_id": "t-1", "expected_version": 1, "actual_version": 2}
        assert store.load_task("t-1").title == "writer one"

    def test_create_refuses_existing_id(self, store):
        store.save_task(make_task("t-1"))
        with pytest.raises(VersionConflictError):
            store.save_task(make_task("t-1"), expected_version=0)

    def test_list_with_filter(self, store):
        store.save_task(make_task("a", project_id="p1"))
        store.save_task(make_task("b", project_id="p1", status=TaskStatus.APPROVED))
        store.save_task(make_task("c", project_id="p2", timer_started_at=T0, timer_owner_id=WORKER_ID))

        assert {t.task_id for t in store.list_tasks(TaskFilter(project_id="p1"))} == {"a", "b"}
        assert [t.task_id for t in store.list_tasks(TaskFilter(statuses={TaskStatus.APPROVED}))] == ["b"]
        assert [t.task_id for t in store.list_tasks(TaskFilter(timer_running=True))] == ["c"]
        assert len(store.list_tasks()) == 3

    def test_legacy_labels_are_read(self, store, store_file):
        record = make_task("legacy").to_dict()
        record["status"] = "In Approvazione"
        record["priority"] = "Alta"
        store_file.write_text(json.dumps({"tasks": {"legacy": record}}))

        task = store.load_task("legacy")
        assert task.status == TaskStatus.PENDING_APPROVAL
        assert task.priority.value == "high"

    def test_corrupt_file_is_persistence_error(self, store, store_file):
        store_file.write_text("{not json")
        with pytest.raises(PersistenceError):
            store.load_task("anything")

    def test_no_temp_file_left_behind(self, store, store_file):
        store.save_task(make_task("t-1"))
        assert not store_file.with_suffix(".json.tmp").exists()


class TestDefinitions:
    """Recurring definition CRUD."""

    def _definition(self, definition_id="d-1", is_active=True):
        return RecurringTaskDefinition(
            definition_id=definition_id,
            title="Weekly sync",
            recurrence=RecurrenceRule(RecurrenceType.WEEKLY, day_of_week=1),
            is_active=is_active,
        )

    def test_round_trip(self, store):
        store.save_definition(self._definition())
        assert store.load_definition("d-1") == self._definition()

    def test_active_only(self, store):
        store.save_definition(self._definition("on"))
        store.save_definition(self._definition("off", is_active=False))

        assert [d.definition_id for d in store.list_definitions(active_only=True)] == ["on"]
        assert len(store.list_definitions()) == 2

    def test_delete(self, store):
        store.save_definition(self._definition())
        store.delete_definition("d-1")

        with pytest.raises(DefinitionNotFoundError):
            store.load_definition("d-1")
        with pytest.raises(DefinitionNotFoundError):
            store.delete_definition("d-1")
