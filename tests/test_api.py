"""
HTTP API Tests

Exercises the FastAPI routes through TestClient against a temporary store.
"""

import threading
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from taskhub.api import create_app
from taskhub.models import TaskStatus

from tests.conftest import APPROVER_A, APPROVER_B, T0, WORKER_ID, make_task, make_terminal_task_with_timer


@pytest.fixture
def client(settings, service):
    return TestClient(create_app(settings, service=service))


def create(client, **body):
    payload = {"title": "Landing page"}
    payload.update(body)
    response = client.post("/tasks", json=payload)
    assert response.status_code == 201
    return response.json()


class TestTaskRoutes:
    """Task creation, lookup and lifecycle actions."""

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_create_and_get(self, client):
        created = create(client, priority="high", estimated_minutes=30)

        response = client.get(f"/tasks/{created['task_id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "todo"
        assert data["priority"] == "high"
        assert data["available_actions"] == ["start_timer", "submit_for_approval", "cancel"]
        assert data["approval_progress"]["required_approver_count"] == 1

    def test_get_missing_is_404(self, client):
        response = client.get("/tasks/nope")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "TASK_NOT_FOUND"

    def test_timer_and_submit(self, client, clock):
        task_id = create(client)["task_id"]

        assert client.post(f"/tasks/{task_id}/timer/start", json={"actor_id": WORKER_ID}).status_code == 200
        clock.advance(seconds=1500)
        view = client.get(f"/tasks/{task_id}").json()
        assert view["tracked_seconds"] == 1500
        assert view["tracked_display"] == "25 min"

        response = client.post(f"/tasks/{task_id}/submit", json={
            "actor_id": WORKER_ID,
            "attachments": [{"name": "proof.png", "tag": "approval"}],
        })

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["task"]["status"] == "pending_approval"
        assert body["task"]["accumulated_seconds"] == 1500
        assert body["task"]["attachments"][0]["uploaded_by"] == WORKER_ID
        assert body["dispatch"]["failures"] == []

    def test_invalid_state_is_409(self, client):
        task_id = create(client)["task_id"]
        client.post(f"/tasks/{task_id}/cancel", json={"actor_id": WORKER_ID})

        response = client.post(f"/tasks/{task_id}/timer/start", json={"actor_id": WORKER_ID})

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "invalid_state"

    def test_empty_reason_is_422(self, client):
        task_id = create(client)["task_id"]
        client.post(f"/tasks/{task_id}/submit", json={"actor_id": WORKER_ID})

        response = client.post(f"/tasks/{task_id}/reject", json={"actor_id": APPROVER_A, "reason": "  "})

        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "empty_reason"

    def test_dependency_not_met_lists_blockers(self, client):
        dep_id = create(client, title="API schema")["task_id"]
        task_id = create(client, dependencies=[dep_id])["task_id"]
        client.post(f"/tasks/{task_id}/submit", json={"actor_id": WORKER_ID})

        response = client.post(f"/tasks/{task_id}/approve", json={"actor_id": APPROVER_A})

        assert response.status_code == 409
        assert response.json()["detail"]["blocking_task_ids"] == [dep_id]

    def test_two_step_approval(self, client):
        task_id = create(client, requires_two_step_approval=True)["task_id"]
        client.post(f"/tasks/{task_id}/submit", json={"actor_id": WORKER_ID})

        first = client.post(f"/tasks/{task_id}/approve", json={"actor_id": APPROVER_A}).json()
        assert first["task"]["status"] == "pending_approval"
        view = client.get(f"/tasks/{task_id}").json()
        assert view["approval_progress"]["pending_reason"] == "awaiting_second_approval"

        duplicate = client.post(f"/tasks/{task_id}/approve", json={"actor_id": APPROVER_A})
        assert duplicate.status_code == 409

        second = client.post(f"/tasks/{task_id}/approve", json={"actor_id": APPROVER_B}).json()
        assert second["task"]["status"] == "approved"

    def test_unauthorized_is_403(self, settings, store, clock):
        from taskhub.task_service import build_task_service

        settings.approver_ids = [APPROVER_A]
        client = TestClient(create_app(settings, service=build_task_service(settings, clock=clock, store=store)))
        task_id = create(client)["task_id"]
        client.post(f"/tasks/{task_id}/submit", json={"actor_id": WORKER_ID})

        response = client.post(f"/tasks/{task_id}/approve", json={"actor_id": WORKER_ID})
        assert response.status_code == 403

    def test_list_filters_by_status(self, client):
        create(client)
        done_id = create(client)["task_id"]
        client.post(f"/tasks/{done_id}/cancel", json={"actor_id": WORKER_ID})

        response = client.get("/tasks", params={"status": "cancelled"})

        assert response.json()["total"] == 1
        assert response.json()["tasks"][0]["task_id"] == done_id

    def test_project_completion(self, client):
        task_id = create(client, project_id="p1")["task_id"]
        assert client.get("/projects/p1/completion").json()["complete"] is False

        client.post(f"/tasks/{task_id}/submit", json={"actor_id": WORKER_ID})
        client.post(f"/tasks/{task_id}/approve", json={"actor_id": APPROVER_A})

        assert client.get("/projects/p1/completion").json()["complete"] is True


class TestTimerRecoveryRoutes:
    """Reconciler admin endpoints."""

    def test_preview_then_commit(self, client, store):
        store.save_task(make_terminal_task_with_timer(
            "stuck", TaskStatus.APPROVED, T0, T0 + timedelta(hours=2),
        ))

        preview = client.post("/admin/timer-recovery/preview").json()
        commit = client.post("/admin/timer-recovery/commit").json()

        assert preview["dry_run"] is True
        assert preview["candidates_found"] == commit["candidates_found"] == 1
        assert preview["recovered_seconds"] == commit["recovered_seconds"] == 7200
        assert store.load_task("stuck").timer_started_at is None

    def test_commit_while_running_is_409(self, settings, service):
        from taskhub.timer_recovery import TimerRecoveryReconciler

        app = create_app(settings, service=service)
        lock = threading.Lock()
        lock.acquire()
        app.state.reconciler = TimerRecoveryReconciler(service.store, sweep_lock=lock)

        response = TestClient(app).post("/admin/timer-recovery/commit")

        assert response.status_code == 409
        lock.release()

    def test_corrupt_store_is_503(self, client, store_file):
        store_file.write_text("{not json")

        preview = client.post("/admin/timer-recovery/preview")
        commit = client.post("/admin/timer-recovery/commit")

        assert preview.status_code == commit.status_code == 503
        assert preview.json()["detail"]["code"] == "PERSISTENCE_ERROR"


class TestCancelledBackfillRoutes:
    """cancelled_at backfill admin endpoints."""

    def test_preview_then_commit(self, client, store):
        store.save_task(make_task("legacy", status=TaskStatus.CANCELLED, updated_at=T0 + timedelta(days=1)))

        preview = client.post("/admin/cancelled-backfill/preview").json()
        assert store.load_task("legacy").cancelled_at is None

        commit = client.post("/admin/cancelled-backfill/commit").json()

        assert preview["dry_run"] is True
        assert commit["dry_run"] is False
        assert preview["candidates_found"] == commit["candidates_found"] == 1
        assert commit["entries"][0]["source"] == "updated_at"
        assert store.load_task("legacy").cancelled_at == T0 + timedelta(days=1)

    def test_commit_while_running_is_409(self, settings, service):
        from taskhub.cancelled_backfill import CancelledAtBackfill

        app = create_app(settings, service=service)
        lock = threading.Lock()
        lock.acquire()
        app.state.backfill = CancelledAtBackfill(service.store, sweep_lock=lock)

        response = TestClient(app).post("/admin/cancelled-backfill/commit")

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "SWEEP_IN_PROGRESS"
        lock.release()

    def test_corrupt_store_is_503(self, client, store_file):
        store_file.write_text("{not json")

        assert client.post("/admin/cancelled-backfill/preview").status_code == 503
        assert client.post("/admin/cancelled-backfill/commit").status_code == 503


class TestRecurringRoutes:
    """Recurring definitions, due listing and sweeps."""

    def _create_definition(self, client, **recurrence):
        rule = {"type": "monthly", "day_of_week": 1, "week_of_month": 1, "time": "09:30"}
        rule.update(recurrence)
        response = client.post("/recurring", json={"title": "Invoice run", "recurrence": rule})
        assert response.status_code == 201
        return response.json()

    def test_create_definition(self, client):
        data = self._create_definition(client)
        assert data["description_text"] == "First Monday of every month at 09:30"

    def test_invalid_rule_is_422(self, client):
        response = client.post("/recurring", json={"title": "Bad", "recurrence": {"type": "weekly"}})
        assert response.status_code == 422

    def test_due_and_sweep(self, client):
        definition_id = self._create_definition(client)["definition_id"]

        due = client.get("/recurring/due", params={"date": "2024-03-04"}).json()
        assert [d["definition_id"] for d in due["definitions"]] == [definition_id]
        assert client.get("/recurring/due", params={"date": "2024-03-11"}).json()["definitions"] == []

        swept = client.post("/recurring/sweep", params={"date": "2024-03-04"}).json()
        assert swept["total"] == 1
        assert swept["created"][0]["due_date"] == "2024-03-04T09:30:00+00:00"

        again = client.post("/recurring/sweep", params={"date": "2024-03-04"}).json()
        assert again["total"] == 0

    def test_materialize(self, client):
        definition_id = self._create_definition(client)["definition_id"]

        response = client.post(f"/recurring/{definition_id}/materialize", json={"target_date": "2024-03-20"})

        assert response.status_code == 201
        assert response.json()["source_definition_id"] == definition_id

    def test_materialize_unknown_definition(self, client):
        response = client.post("/recurring/nope/materialize", json={"target_date": "2024-03-20"})
        assert response.status_code == 404

    def test_materialize_inactive_definition_is_409(self, client):
        rule = {"type": "daily"}
        created = client.post("/recurring", json={"title": "Paused", "recurrence": rule, "is_active": False})
        definition_id = created.json()["definition_id"]

        response = client.post(f"/recurring/{definition_id}/materialize", json={"target_date": "2024-03-20"})

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "DEFINITION_INACTIVE"

    def test_delete(self, client):
        definition_id = self._create_definition(client)["definition_id"]

        assert client.delete(f"/recurring/{definition_id}").status_code == 200
        assert client.get("/recurring").json()["total"] == 0
