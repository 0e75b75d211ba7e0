"""
Dependency Graph View

Read-only lookup from a task to the current status of its prerequisites.
The lifecycle engine consults it to gate the approve transition.
"""

from typing import Dict, Iterable, List, Optional

from .errors import TaskNotFoundError
from .models import Task, TaskStatus


class DependencyGraphView:
    """Answers "what is the status of task X right now?"."""

    def status_of(self, task_id: str) -> Optional[TaskStatus]:
        """Current status, or None when the task is unknown."""
        raise NotImplementedError

    def blocking_dependencies(self, task: Task) -> List[str]:
        """
        Prerequisites that are not approved yet, in declaration order.

        An unknown prerequisite is blocking: it cannot be shown to be approved.
        """
        blocking = []
        for dependency_id in task.dependencies:
            if self.status_of(dependency_id) != TaskStatus.APPROVED:
                blocking.append(dependency_id)
        return blocking


class MappingDependencyView(DependencyGraphView):
    """View over an in-memory id -> status mapping."""

    def __init__(self, statuses: Optional[Dict[str, TaskStatus]] = None):
        self._statuses = dict(statuses or {})

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "MappingDependencyView":
        return cls({t.task_id: t.status for t in tasks})

    def status_of(self, task_id: str) -> Optional[TaskStatus]:
        return self._statuses.get(task_id)


class StoreDependencyView(DependencyGraphView):
    """View backed by the task store; reads the latest persisted status."""

    def __init__(self, store):
        self._store = store

    def status_of(self, task_id: str) -> Optional[TaskStatus]:
        try:
            return self._store.load_task(task_id).status
        except TaskNotFoundError:
            return None
