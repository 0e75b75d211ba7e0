"""
Task Service Tests

Load -> transition -> save -> dispatch, end to end against the file store.
"""

from datetime import date

import pytest

from taskhub.errors import DefinitionInactiveError, ErrorKind, TaskNotFoundError
from taskhub.instructions import InstructionKind, NotificationEvent
from taskhub.models import (
    Attachment,
    RecurrenceRule,
    RecurrenceType,
    RecurringTaskDefinition,
    TaskStatus,
)
from taskhub.task_service import build_task_service

from tests.conftest import APPROVER_A, APPROVER_B, T0, WORKER_ID, make_task


@pytest.fixture
def notifications(service):
    seen = []
    service.dispatcher.register(InstructionKind.NOTIFY, seen.append)
    return seen


def weekly_definition(definition_id="weekly", **overrides):
    values = {
        "definition_id": definition_id,
        "title": "Weekly backup check",
        "recurrence": RecurrenceRule(RecurrenceType.WEEKLY, day_of_week=1, time="08:00"),
        "project_id": "ops",
    }
    values.update(overrides)
    return RecurringTaskDefinition(**values)


class TestPerform:
    """Actions run against stored snapshots."""

    def test_full_workflow(self, service, clock, notifications):
        service.create_task(make_task("t-1"))

        service.start_timer("t-1", WORKER_ID)
        clock.advance(seconds=1500)
        service.stop_timer("t-1", WORKER_ID)
        clock.advance(seconds=100)
        service.submit_for_approval("t-1", WORKER_ID)
        result, report = service.approve("t-1", APPROVER_A)

        assert result.ok
        assert report.ok
        stored = service.get_task("t-1")
        assert stored.status == TaskStatus.APPROVED
        assert stored.accumulated_seconds == 1500
        assert stored.version == 5
        assert [n.event for n in notifications] == [
            NotificationEvent.TASK_STARTED,
            NotificationEvent.TASK_APPROVAL_REQUESTED,
            NotificationEvent.TASK_APPROVED,
        ]

    def test_refused_action_saves_nothing(self, service, notifications):
        service.create_task(make_task("t-1", status=TaskStatus.CANCELLED))

        result, report = service.start_timer("t-1", WORKER_ID)

        assert result.error.kind == ErrorKind.INVALID_STATE
        assert report is None
        assert service.get_task("t-1").version == 1
        assert notifications == []

    def test_failing_handler_does_not_undo_save(self, service):
        def broken(instruction):
            raise RuntimeError("mail server down")

        service.dispatcher.register(InstructionKind.NOTIFY, broken)
        service.create_task(make_task("t-1"))

        result, report = service.start_timer("t-1", WORKER_ID)

        assert result.ok
        assert not report.ok
        assert "mail server down" in report.failures[0]["error"]
        assert service.get_task("t-1").timer_running

    def test_unknown_task(self, service):
        with pytest.raises(TaskNotFoundError):
            service.start_timer("missing", WORKER_ID)

    def test_reject_discards_evidence(self, service):
        service.create_task(make_task("t-1"))
        service.submit_for_approval("t-1", WORKER_ID, attachments=[
            Attachment("att-1", "screenshot.png", tag="approval"),
            Attachment("att-2", "notes.txt"),
        ])

        result, report = service.reject("t-1", APPROVER_A, "needs colors fixed")

        assert report.delivered >= 2
        stored = service.get_task("t-1")
        assert stored.status == TaskStatus.IN_PROGRESS
        assert [a.attachment_id for a in stored.attachments] == ["att-2"]


class TestDependenciesAndProjects:
    """Dependency gating against the store and project completion."""

    def test_dependency_read_from_store(self, service):
        service.create_task(make_task("dep", status=TaskStatus.PENDING_APPROVAL))
        service.create_task(make_task("main", status=TaskStatus.PENDING_APPROVAL, dependencies=("dep",)))

        blocked, _ = service.approve("main", APPROVER_A)
        assert blocked.error.kind == ErrorKind.DEPENDENCY_NOT_MET
        assert blocked.error.blocking_task_ids == ("dep",)

        service.approve("dep", APPROVER_A)
        approved, _ = service.approve("main", APPROVER_A)
        assert approved.task.status == TaskStatus.APPROVED

    def test_project_completed_notification(self, service, notifications):
        service.create_task(make_task("a", project_id="p1", status=TaskStatus.PENDING_APPROVAL))
        service.create_task(make_task("b", project_id="p1", status=TaskStatus.PENDING_APPROVAL))
        service.create_task(make_task("c", project_id="p1", status=TaskStatus.CANCELLED))

        service.approve("a", APPROVER_A)
        assert NotificationEvent.PROJECT_COMPLETED not in [n.event for n in notifications]

        service.approve("b", APPROVER_A)
        completed = [n for n in notifications if n.event == NotificationEvent.PROJECT_COMPLETED]
        assert len(completed) == 1
        assert completed[0].details["project_id"] == "p1"
        assert service.check_project_completion("p1")

    def test_two_step_with_configured_approvers(self, settings, store, clock):
        settings.approver_ids = [APPROVER_A, APPROVER_B]
        service = build_task_service(settings, clock=clock, store=store)
        service.create_task(make_task("t-1", status=TaskStatus.PENDING_APPROVAL, requires_two_step_approval=True))

        denied, _ = service.approve("t-1", WORKER_ID)
        assert denied.error.kind == ErrorKind.UNAUTHORIZED

        service.approve("t-1", APPROVER_A)
        clock.advance(minutes=5)
        result, _ = service.approve("t-1", APPROVER_B)

        assert result.task.status == TaskStatus.APPROVED
        assert len(result.task.approvals) == 2


class TestRecurrenceSweep:
    """Service-level recurrence sweep."""

    def test_sweep_creates_due_tasks(self, service, store, notifications):
        store.save_definition(weekly_definition())
        store.save_definition(weekly_definition("friday", recurrence=RecurrenceRule(RecurrenceType.WEEKLY, day_of_week=5)))

        created = service.run_recurrence_sweep(date(2024, 3, 4))

        assert [t.source_definition_id for t in created] == ["weekly"]
        assert store.load_task(created[0].task_id).status == TaskStatus.TODO
        assert [n.event for n in notifications] == [NotificationEvent.TASK_CREATED_FROM_RECURRENCE]

    def test_sweep_is_idempotent_per_date(self, service, store):
        store.save_definition(weekly_definition())

        service.run_recurrence_sweep(date(2024, 3, 4))
        again = service.run_recurrence_sweep(date(2024, 3, 4))
        next_week = service.run_recurrence_sweep(date(2024, 3, 11))

        assert again == []
        assert len(next_week) == 1
        assert len(store.list_tasks()) == 2

    def test_preview_saves_nothing(self, service, store):
        store.save_definition(weekly_definition())

        planned = service.run_recurrence_sweep(date(2024, 3, 4), commit=False)

        assert len(planned) == 1
        assert store.list_tasks() == []

    def test_sweep_defaults_to_today(self, service, store):
        store.save_definition(weekly_definition())
        # T0 is Monday 2024-03-04
        assert len(service.run_recurrence_sweep()) == 1

    def test_materialize_definition_ad_hoc(self, service, store):
        store.save_definition(weekly_definition())

        task = service.materialize_definition("weekly", date(2024, 3, 6))

        assert task.version == 1
        assert task.due_date.date() == date(2024, 3, 6)
        assert task.created_at == T0

    def test_materialize_inactive_definition_refused(self, service, store):
        store.save_definition(weekly_definition(is_active=False))

        with pytest.raises(DefinitionInactiveError) as exc:
            service.materialize_definition("weekly", date(2024, 3, 6))

        assert exc.value.definition_id == "weekly"
        assert store.list_tasks() == []


class TestCancelledBackfill:
    """Service wiring for the cancelled_at backfill."""

    def test_backfill_uses_service_store(self, service, store):
        store.save_task(make_task("legacy", status=TaskStatus.CANCELLED))

        report = service.cancelled_backfill().commit()

        assert report.candidates_found == 1
        assert store.load_task("legacy").cancelled_at == T0
