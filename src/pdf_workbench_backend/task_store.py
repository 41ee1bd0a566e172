"""
Processing task records and their status state machine.

Tasks are stored as immutable snapshots. An update builds a new snapshot and
swaps it in under a lock, so a poller always reads either the previous or the
next complete record, never a partially merged one.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, Optional, Sequence

from .models import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, OutputFileResponse, TaskKind, TaskResponse, TaskStatus
from .utils import utcnow


class InvalidTransitionError(RuntimeError):
    """Raised when a status change would move a task backwards or out of a terminal state."""

    def __init__(self, task_id: int, current: TaskStatus, requested: TaskStatus) -> None:
        super().__init__(f"Task {task_id} cannot move from {current.value} to {requested.value}")
        self.task_id = task_id
        self.current = current
        self.requested = requested


class TaskNotFoundError(KeyError):
    """Raised when an operation names a task id the store does not know."""


@dataclass(frozen=True)
class OutputFile:
    id: int
    filename: str
    content_type: str


@dataclass(frozen=True)
class ProcessingTask:
    """
    Snapshot of a tracked unit of asynchronous work.

    Attributes:
        id: Unique task identifier
        kind: Which transformation the task runs
        status: Current position in the state machine
        created_at: Creation timestamp (UTC)
        updated_at: Refreshed on every update
        input_file_ids: Ordered input StoredFile ids (order matters for merge)
        output_files: Result references, populated only once completed
        error: Failure message, populated only once failed
    """

    id: int
    kind: TaskKind
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    input_file_ids: tuple[int, ...]
    output_files: tuple[OutputFile, ...] = field(default_factory=tuple)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_response(self) -> TaskResponse:
        return TaskResponse(
            id=self.id,
            type=self.kind,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            input_files=list(self.input_file_ids),
            output_files=[
                OutputFileResponse(id=output.id, filename=output.filename, type=output.content_type)
                for output in self.output_files
            ],
            error=self.error,
        )


def check_transition(task_id: int, current: TaskStatus, requested: TaskStatus) -> None:
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(task_id, current, requested)


class TaskStore(ABC):
    """Contract for processing task backends."""

    @abstractmethod
    def create(self, kind: TaskKind, input_file_ids: Sequence[int]) -> ProcessingTask:
        """Record a new pending task."""

    @abstractmethod
    def get(self, task_id: int) -> Optional[ProcessingTask]:
        """Return the current snapshot for ``task_id`` or None."""

    @abstractmethod
    def list(self) -> list[ProcessingTask]:
        """Return all tasks in creation order."""

    @abstractmethod
    def update(
        self,
        task_id: int,
        *,
        status: Optional[TaskStatus] = None,
        output_files: Optional[Iterable[OutputFile]] = None,
        error: Optional[str] = None,
    ) -> Optional[ProcessingTask]:
        """
        Merge the supplied fields into the task and refresh ``updated_at``.

        Returns:
            The new snapshot, or None for an unknown id

        Raises:
            InvalidTransitionError: if ``status`` is not a legal next state
        """


class InMemoryTaskStore(TaskStore):
    """Process-local task store backed by a dict of immutable snapshots."""

    def __init__(self) -> None:
        self._tasks: Dict[int, ProcessingTask] = {}
        self._ids = itertools.count(1)
        self._lock = Lock()

    def create(self, kind: TaskKind, input_file_ids: Sequence[int]) -> ProcessingTask:
        if not input_file_ids:
            raise ValueError("A task needs at least one input file")
        now = utcnow()
        with self._lock:
            task = ProcessingTask(
                id=next(self._ids),
                kind=kind,
                status=TaskStatus.PENDING,
                created_at=now,
                updated_at=now,
                input_file_ids=tuple(input_file_ids),
            )
            self._tasks[task.id] = task
            return task

    def get(self, task_id: int) -> Optional[ProcessingTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def list(self) -> list[ProcessingTask]:
        with self._lock:
            return list(self._tasks.values())

    def update(self, task_id, *, status=None, output_files=None, error=None) -> Optional[ProcessingTask]:
        changes: Dict[str, object] = {}
        if output_files is not None:
            changes["output_files"] = tuple(output_files)
        if error is not None:
            changes["error"] = error

        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return None
            if status is not None:
                check_transition(task_id, current.status, status)
                changes["status"] = status
            updated = replace(current, updated_at=utcnow(), **changes)
            self._tasks[task_id] = updated
            return updated
