"""
HTTP API

FastAPI routes for:
- Task creation and lookup
- Lifecycle actions (timer, submit, approve, reject, cancel)
- Admin sweeps: timer recovery and cancelled_at backfill (preview/commit)
- Recurring task definitions and sweeps

Refused transitions map to HTTP status codes by error kind; storage
errors map to 404 (not found) or 503 (persistence failure).
"""

import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from . import __version__
from .approval_ledger import approval_progress
from .config import Settings, load_settings
from .errors import (
    DefinitionInactiveError,
    DefinitionNotFoundError,
    ErrorKind,
    ReconciliationInProgressError,
    StoreError,
    TaskNotFoundError,
)
from .instructions import DispatchReport
from .lifecycle_engine import TransitionResult, available_actions
from .models import (
    Attachment,
    RecurrenceRule,
    RecurringTaskDefinition,
    Task,
    TaskPriority,
    TaskStatus,
)
from .recurrence import describe, due_definitions
from .task_service import TaskService, build_task_service
from .task_store import TaskFilter
from .timer_ledger import format_duration, running_seconds

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logger = logging.getLogger("api")

# -----------------------------------------------------------------------------
# Router Setup
# -----------------------------------------------------------------------------
router = APIRouter()

ERROR_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.DEPENDENCY_NOT_MET: 409,
    ErrorKind.EMPTY_REASON: 422,
}


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class ActorRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)


class AttachmentModel(BaseModel):
    attachment_id: Optional[str] = None
    name: str
    url: str = ""
    tag: Optional[str] = None


class SubmitRequest(ActorRequest):
    attachments: List[AttachmentModel] = Field(default_factory=list)


class RejectRequest(ActorRequest):
    reason: str = ""


class CreateTaskRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    priority: str = TaskPriority.MEDIUM.value
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    activity_type: Optional[str] = None
    created_by: Optional[str] = None
    requires_two_step_approval: bool = False
    skip_attachment_on_approval: bool = False
    dependencies: List[str] = Field(default_factory=list)
    estimated_minutes: int = Field(0, ge=0)


class RecurrenceModel(BaseModel):
    type: str
    time: str = "09:00"
    day_of_week: Optional[int] = None
    week_of_month: Optional[int] = None
    end_date: Optional[date] = None


class CreateDefinitionRequest(BaseModel):
    title: str = Field(..., min_length=1)
    recurrence: RecurrenceModel
    description: str = ""
    priority: str = TaskPriority.MEDIUM.value
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    activity_type: Optional[str] = None
    assigned_user_id: Optional[str] = None
    estimated_minutes: int = Field(0, ge=0)
    requires_two_step_approval: bool = False
    is_active: bool = True


class MaterializeRequest(BaseModel):
    target_date: date


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def get_service(request: Request) -> TaskService:
    return request.app.state.service


def _store_error(e: StoreError) -> HTTPException:
    if isinstance(e, (TaskNotFoundError, DefinitionNotFoundError)):
        return HTTPException(status_code=404, detail=e.to_dict())
    logger.error(f"Storage failure: {e.message}")
    return HTTPException(status_code=503, detail=e.to_dict())


def _task_view(task: Task, service: TaskService) -> Dict[str, Any]:
    data = task.to_dict()
    data["approval_progress"] = approval_progress(task)
    data["available_actions"] = available_actions(task)
    now = service.clock.now()
    data["tracked_seconds"] = running_seconds(task, now)
    data["tracked_display"] = format_duration(data["tracked_seconds"])
    return data


def _action_response(outcome: Tuple[TransitionResult, Optional[DispatchReport]]) -> Dict[str, Any]:
    result, report = outcome
    if not result.ok:
        raise HTTPException(status_code=ERROR_STATUS_CODES[result.error.kind], detail=result.error.to_dict())
    return {
        **result.to_dict(),
        "dispatch": report.to_dict() if report else None,
    }


def _run_action(action, task_id: str, *args) -> Dict[str, Any]:
    try:
        return _action_response(action(task_id, *args))
    except StoreError as e:
        raise _store_error(e)


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------
@router.post("/tasks", status_code=201)
def create_task(body: CreateTaskRequest, service: TaskService = Depends(get_service)):
    try:
        task = Task(
            task_id=uuid.uuid4().hex,
            title=body.title,
            description=body.description,
            priority=TaskPriority.parse(body.priority),
            client_id=body.client_id,
            project_id=body.project_id,
            assigned_user_id=body.assigned_user_id,
            activity_type=body.activity_type,
            created_by=body.created_by,
            requires_two_step_approval=body.requires_two_step_approval,
            skip_attachment_on_approval=body.skip_attachment_on_approval,
            dependencies=tuple(body.dependencies),
            estimated_minutes=body.estimated_minutes,
            created_at=service.clock.now(),
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        return _task_view(service.create_task(task), service)
    except StoreError as e:
        raise _store_error(e)


@router.get("/tasks")
def list_tasks(
    status: Optional[List[str]] = Query(None),
    project_id: Optional[str] = None,
    assigned_user_id: Optional[str] = None,
    timer_running: Optional[bool] = None,
    service: TaskService = Depends(get_service),
):
    try:
        statuses = {TaskStatus.parse(s) for s in status} if status else None
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    task_filter = TaskFilter(
        statuses=statuses,
        project_id=project_id,
        assigned_user_id=assigned_user_id,
        timer_running=timer_running,
    )
    try:
        tasks = service.store.list_tasks(task_filter)
    except StoreError as e:
        raise _store_error(e)
    return {"tasks": [_task_view(t, service) for t in tasks], "total": len(tasks)}


@router.get("/tasks/{task_id}")
def get_task(task_id: str, service: TaskService = Depends(get_service)):
    try:
        return _task_view(service.get_task(task_id), service)
    except StoreError as e:
        raise _store_error(e)


@router.post("/tasks/{task_id}/timer/start")
def start_timer(task_id: str, body: ActorRequest, service: TaskService = Depends(get_service)):
    return _run_action(service.start_timer, task_id, body.actor_id)


@router.post("/tasks/{task_id}/timer/stop")
def stop_timer(task_id: str, body: ActorRequest, service: TaskService = Depends(get_service)):
    return _run_action(service.stop_timer, task_id, body.actor_id)


@router.post("/tasks/{task_id}/submit")
def submit_for_approval(task_id: str, body: SubmitRequest, service: TaskService = Depends(get_service)):
    attachments = [
        Attachment(
            attachment_id=a.attachment_id or uuid.uuid4().hex,
            name=a.name,
            url=a.url,
            tag=a.tag,
            uploaded_by=body.actor_id,
        )
        for a in body.attachments
    ]
    return _run_action(service.submit_for_approval, task_id, body.actor_id, attachments)


@router.post("/tasks/{task_id}/approve")
def approve(task_id: str, body: ActorRequest, service: TaskService = Depends(get_service)):
    return _run_action(service.approve, task_id, body.actor_id)


@router.post("/tasks/{task_id}/reject")
def reject(task_id: str, body: RejectRequest, service: TaskService = Depends(get_service)):
    return _run_action(service.reject, task_id, body.actor_id, body.reason)


@router.post("/tasks/{task_id}/cancel")
def cancel(task_id: str, body: ActorRequest, service: TaskService = Depends(get_service)):
    return _run_action(service.cancel, task_id, body.actor_id)


@router.get("/projects/{project_id}/completion")
def project_completion(project_id: str, service: TaskService = Depends(get_service)):
    try:
        return {"project_id": project_id, "complete": service.check_project_completion(project_id)}
    except StoreError as e:
        raise _store_error(e)


# -----------------------------------------------------------------------------
# Admin Sweeps
# -----------------------------------------------------------------------------
def _preview(sweep) -> Dict[str, Any]:
    try:
        return sweep.preview().to_dict()
    except StoreError as e:
        raise _store_error(e)


def _commit(sweep) -> Dict[str, Any]:
    try:
        return sweep.commit().to_dict()
    except ReconciliationInProgressError as e:
        raise HTTPException(status_code=409, detail={"error": True, "code": "SWEEP_IN_PROGRESS", "message": str(e)})
    except StoreError as e:
        raise _store_error(e)


@router.post("/admin/timer-recovery/preview")
def timer_recovery_preview(request: Request):
    return _preview(request.app.state.reconciler)


@router.post("/admin/timer-recovery/commit")
def timer_recovery_commit(request: Request):
    return _commit(request.app.state.reconciler)


@router.post("/admin/cancelled-backfill/preview")
def cancelled_backfill_preview(request: Request):
    return _preview(request.app.state.backfill)


@router.post("/admin/cancelled-backfill/commit")
def cancelled_backfill_commit(request: Request):
    return _commit(request.app.state.backfill)


# -----------------------------------------------------------------------------
# Recurring Tasks
# -----------------------------------------------------------------------------
@router.post("/recurring", status_code=201)
def create_definition(body: CreateDefinitionRequest, service: TaskService = Depends(get_service)):
    try:
        definition = RecurringTaskDefinition(
            definition_id=uuid.uuid4().hex,
            title=body.title,
            recurrence=RecurrenceRule(**body.recurrence.model_dump()),
            description=body.description,
            priority=body.priority,
            client_id=body.client_id,
            project_id=body.project_id,
            activity_type=body.activity_type,
            assigned_user_id=body.assigned_user_id,
            estimated_minutes=body.estimated_minutes,
            requires_two_step_approval=body.requires_two_step_approval,
            is_active=body.is_active,
            created_at=service.clock.now(),
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        stored = service.store.save_definition(definition)
    except StoreError as e:
        raise _store_error(e)
    return {**stored.to_dict(), "description_text": describe(stored.recurrence)}


@router.get("/recurring")
def list_definitions(active_only: bool = False, service: TaskService = Depends(get_service)):
    try:
        definitions = service.store.list_definitions(active_only=active_only)
    except StoreError as e:
        raise _store_error(e)
    return {"definitions": [d.to_dict() for d in definitions], "total": len(definitions)}


@router.get("/recurring/due")
def due_recurring(on: date = Query(..., alias="date"), service: TaskService = Depends(get_service)):
    try:
        definitions = due_definitions(service.store.list_definitions(active_only=True), on)
    except StoreError as e:
        raise _store_error(e)
    return {"date": on.isoformat(), "definitions": [d.to_dict() for d in definitions]}


@router.post("/recurring/sweep")
def recurrence_sweep(
    on: Optional[date] = Query(None, alias="date"),
    commit: bool = True,
    service: TaskService = Depends(get_service),
):
    try:
        tasks = service.run_recurrence_sweep(on, commit=commit)
    except StoreError as e:
        raise _store_error(e)
    return {"committed": commit, "created": [t.to_dict() for t in tasks], "total": len(tasks)}


@router.post("/recurring/{definition_id}/materialize", status_code=201)
def materialize(definition_id: str, body: MaterializeRequest, service: TaskService = Depends(get_service)):
    try:
        return service.materialize_definition(definition_id, body.target_date).to_dict()
    except DefinitionInactiveError as e:
        raise HTTPException(status_code=409, detail=e.to_dict())
    except StoreError as e:
        raise _store_error(e)


@router.delete("/recurring/{definition_id}")
def delete_definition(definition_id: str, service: TaskService = Depends(get_service)):
    try:
        service.store.delete_definition(definition_id)
    except StoreError as e:
        raise _store_error(e)
    return {"deleted": definition_id}


# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------
def create_app(settings: Optional[Settings] = None, service: Optional[TaskService] = None) -> FastAPI:
    """Build the FastAPI application around a task service."""
    settings = settings or load_settings()
    service = service or build_task_service(settings)

    app = FastAPI(
        title="Task Hub",
        description="Task lifecycle, approvals, time tracking and recurring work",
        version=__version__,
    )
    app.state.settings = settings
    app.state.service = service
    app.state.reconciler = service.timer_reconciler()
    app.state.backfill = service.cancelled_backfill()
    app.include_router(router)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    logger.info(f"Task Hub API ready (store: {service.store.store_file})")
    return app
