"""
Task Service

Caller side of the lifecycle engine. For every action it:
1. Loads a fresh snapshot from the store
2. Runs the pure engine transition
3. Saves the new snapshot (compare-and-set on version)
4. Dispatches the side-effect instructions, strictly after the save

A refused transition saves nothing and dispatches nothing. A failing
instruction handler never undoes the saved snapshot. Storage failures
propagate as PersistenceError; the whole action can be retried from a
freshly loaded snapshot.
"""

import dataclasses
import logging
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

from . import recurrence
from .approval_ledger import (
    AllowAllCapabilityChecker,
    CapabilityChecker,
    StaticCapabilityChecker,
    TagAttachmentClassifier,
)
from .cancelled_backfill import CancelledAtBackfill
from .clock import Clock, SystemClock
from .config import Settings
from .dependencies import StoreDependencyView
from .errors import DefinitionInactiveError
from .instructions import (
    DispatchReport,
    Instruction,
    InstructionDispatcher,
    InstructionKind,
    NotificationEvent,
    log_instruction,
    notify,
)
from .lifecycle_engine import (
    CommandType,
    LifecycleCommand,
    TaskLifecycleEngine,
    TransitionResult,
    is_project_complete,
)
from .models import Attachment, Task
from .task_store import TaskFilter, TaskStore
from .timer_recovery import TimerRecoveryReconciler

logger = logging.getLogger("task_service")


class TaskService:
    """Runs lifecycle commands against the store and dispatches their effects."""

    def __init__(
        self,
        store: TaskStore,
        engine: TaskLifecycleEngine,
        dispatcher: Optional[InstructionDispatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.engine = engine
        self.dispatcher = dispatcher or InstructionDispatcher()
        self.settings = settings or Settings()
        self.dispatcher.register(InstructionKind.CHECK_PROJECT_COMPLETION, self._on_check_project_completion)

    @property
    def clock(self) -> Clock:
        return self.engine.clock

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        stored = self.store.save_task(task, expected_version=0)
        logger.info(f"Created task {stored.task_id}: {stored.title}")
        return stored

    def get_task(self, task_id: str) -> Task:
        return self.store.load_task(task_id)

    def perform(self, task_id: str, command: LifecycleCommand) -> Tuple[TransitionResult, Optional[DispatchReport]]:
        """
        Apply one lifecycle command to the stored task.

        Returns the transition result (carrying the saved snapshot on
        success) and the dispatch report, which is None for refused commands.
        """
        task = self.store.load_task(task_id)
        result = self.engine.apply(task, command)
        if not result.ok:
            return result, None

        stored = self.store.save_task(result.task, expected_version=task.version)
        result = dataclasses.replace(result, task=stored)

        report = self.dispatcher.dispatch(list(result.instructions))
        if not report.ok:
            logger.warning(
                f"{len(report.failures)} side effect(s) failed after {command.command_type.value} on task {task_id}"
            )
        return result, report

    def start_timer(self, task_id: str, actor_id: str, now: Optional[datetime] = None):
        return self.perform(task_id, LifecycleCommand(CommandType.START_TIMER, actor_id, now=now))

    def stop_timer(self, task_id: str, actor_id: str, now: Optional[datetime] = None):
        return self.perform(task_id, LifecycleCommand(CommandType.STOP_TIMER, actor_id, now=now))

    def submit_for_approval(
        self,
        task_id: str,
        actor_id: str,
        attachments: Iterable[Attachment] = (),
        now: Optional[datetime] = None,
    ):
        return self.perform(task_id, LifecycleCommand(
            CommandType.SUBMIT_FOR_APPROVAL, actor_id, now=now, attachments=tuple(attachments)
        ))

    def approve(self, task_id: str, actor_id: str, now: Optional[datetime] = None):
        return self.perform(task_id, LifecycleCommand(CommandType.APPROVE, actor_id, now=now))

    def reject(self, task_id: str, actor_id: str, reason: str, now: Optional[datetime] = None):
        return self.perform(task_id, LifecycleCommand(CommandType.REJECT, actor_id, now=now, reason=reason))

    def cancel(self, task_id: str, actor_id: str, now: Optional[datetime] = None):
        return self.perform(task_id, LifecycleCommand(CommandType.CANCEL, actor_id, now=now))

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def check_project_completion(self, project_id: str) -> bool:
        return is_project_complete(self.store.list_tasks(TaskFilter(project_id=project_id)))

    def _on_check_project_completion(self, instruction: Instruction) -> None:
        project_id = instruction.details.get("project_id")
        if project_id and self.check_project_completion(project_id):
            logger.info(f"All tasks of project {project_id} are approved")
            self.dispatcher.dispatch([notify(
                NotificationEvent.PROJECT_COMPLETED,
                instruction.task_id,
                instruction.actor_id,
                project_id=project_id,
            )])

    # -------------------------------------------------------------------------
    # Recurrence
    # -------------------------------------------------------------------------

    def run_recurrence_sweep(self, on: Optional[date] = None, commit: bool = True) -> List[Task]:
        """
        Materialize every active definition due on the date.

        A definition that already produced a task due that day is skipped, so
        running the sweep twice for the same date creates nothing new. With
        commit=False the planned tasks are returned without being saved.
        """
        now = self.clock.now()
        on = on or now.astimezone(self.settings.tz).date()

        planned = []
        for definition in recurrence.due_definitions(self.store.list_definitions(active_only=True), on):
            if self._already_materialized(definition.definition_id, on):
                logger.debug(f"Definition {definition.definition_id} already materialized for {on.isoformat()}")
                continue
            planned.append(recurrence.materialize(definition, on, now=now, tz=self.settings.tz))

        if not commit:
            return planned

        created = [self._save_materialized(task) for task in planned]
        logger.info(f"Recurrence sweep for {on.isoformat()}: created {len(created)} task(s)")
        return created

    def materialize_definition(self, definition_id: str, target_date: date) -> Task:
        """
        Ad-hoc materialization for an operator-chosen date.

        The rule cadence is not consulted, but inactive definitions are
        refused with DefinitionInactiveError.
        """
        definition = self.store.load_definition(definition_id)
        if not definition.is_active:
            raise DefinitionInactiveError(definition_id)
        task = recurrence.materialize(definition, target_date, now=self.clock.now(), tz=self.settings.tz)
        return self._save_materialized(task)

    def _already_materialized(self, definition_id: str, on: date) -> bool:
        existing = self.store.list_tasks(TaskFilter(source_definition_id=definition_id))
        return any(
            t.due_date is not None and t.due_date.astimezone(self.settings.tz).date() == on
            for t in existing
        )

    def _save_materialized(self, task: Task) -> Task:
        stored = self.store.save_task(task, expected_version=0)
        self.dispatcher.dispatch([notify(
            NotificationEvent.TASK_CREATED_FROM_RECURRENCE,
            stored.task_id,
            source_definition_id=stored.source_definition_id,
            due_date=stored.due_date.isoformat() if stored.due_date else None,
        )])
        return stored

    # -------------------------------------------------------------------------
    # Admin Sweeps
    # -------------------------------------------------------------------------

    def timer_reconciler(self) -> TimerRecoveryReconciler:
        return TimerRecoveryReconciler(self.store)

    def cancelled_backfill(self) -> CancelledAtBackfill:
        return CancelledAtBackfill(self.store)


def build_task_service(
    settings: Settings,
    clock: Optional[Clock] = None,
    store: Optional[TaskStore] = None,
) -> TaskService:
    """Wire store, engine collaborators and dispatcher from settings."""
    store = store or TaskStore(settings.store_file)

    capability: CapabilityChecker
    if settings.approver_ids:
        capability = StaticCapabilityChecker(settings.approver_ids)
    else:
        capability = AllowAllCapabilityChecker()

    engine = TaskLifecycleEngine(
        clock=clock or SystemClock(),
        capability=capability,
        attachment_classifier=TagAttachmentClassifier(settings.approval_evidence_tag),
        dependency_view=StoreDependencyView(store),
        require_attachment_on_submit=settings.require_attachment_on_submit,
    )

    dispatcher = InstructionDispatcher()
    dispatcher.register(InstructionKind.NOTIFY, log_instruction)
    dispatcher.register(InstructionKind.DISCARD_ATTACHMENT, log_instruction)

    return TaskService(store=store, engine=engine, dispatcher=dispatcher, settings=settings)
