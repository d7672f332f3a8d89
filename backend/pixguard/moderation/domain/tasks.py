"""Moderation task records, the task store contract, and an in-memory store."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, MutableMapping, Protocol, Sequence

import ulid

from pixguard.errors import TaskConflict, TaskNotFound


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR})
ELIGIBLE_STATUSES = (TaskStatus.PENDING, TaskStatus.FAILED)
SKIP_REASON = "content screening disabled"
INTERRUPTED_ERROR = "interrupted while processing"


def skip_marker(reason: str = SKIP_REASON) -> dict[str, Any]:
    """Result stored on tasks completed without calling a provider."""
    return {"skipped": True, "reason": reason}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return ulid.new().str


@dataclass(slots=True)
class ModerationTask:
    """One screening job for one uploaded image."""

    id: str
    subject_id: str
    subject_ref: str
    artifact_name: str
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    result: dict[str, Any] | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "subject_ref": self.subject_ref,
            "artifact_name": self.artifact_name,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "result": self.result,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class TaskStore(Protocol):
    """Persistence for moderation tasks.

    Every ``mark_*`` call is a single-record update and returns the task as
    stored afterwards. Tasks are never deleted.
    """

    async def create(self, *, subject_id: str, subject_ref: str, artifact_name: str) -> ModerationTask:
        """Insert a pending task, refusing a second live task for the same subject."""

    async def get(self, task_id: str) -> ModerationTask | None:
        """Fetch a task by identifier."""

    async def list_eligible(self, *, limit: int = 50) -> Sequence[ModerationTask]:
        """Return pending and failed tasks, oldest first."""

    async def mark_processing(self, task_id: str) -> ModerationTask:
        """Move a task to processing."""

    async def mark_completed(self, task_id: str, result: Mapping[str, Any]) -> ModerationTask:
        """Store the result and clear the last error."""

    async def mark_failed(self, task_id: str, *, error: str) -> ModerationTask:
        """Increment the retry count and record the error."""

    async def mark_error(self, task_id: str, *, error: str) -> ModerationTask:
        """Move a task to the terminal error status."""

    async def reset_failed(self) -> int:
        """Return failed and error tasks to pending with a zero retry count."""

    async def recover_interrupted(self, *, error: str = INTERRUPTED_ERROR) -> int:
        """Mark tasks left in processing by a stopped process as failed.

        Counts as an attempt, so the normal retry and escalation path picks
        them up again. Only call this before any processor is running.
        """

    async def count_by_status(self) -> Mapping[TaskStatus, int]:
        """Return the number of tasks in every status."""


@dataclass
class InMemoryTaskStore(TaskStore):
    """Task store kept in a dict, for local development and tests."""

    tasks: MutableMapping[str, ModerationTask] = field(default_factory=dict)
    clock: Callable[[], datetime] = _utcnow
    id_factory: Callable[[], str] = new_task_id

    async def create(self, *, subject_id: str, subject_ref: str, artifact_name: str) -> ModerationTask:
        for existing in self.tasks.values():
            if existing.subject_id == subject_id and not existing.is_terminal:
                raise TaskConflict(f"subject {subject_id} already has task {existing.id}")
        now = self.clock()
        task = ModerationTask(
            id=self.id_factory(),
            subject_id=subject_id,
            subject_ref=subject_ref,
            artifact_name=artifact_name,
            created_at=now,
            updated_at=now,
        )
        self.tasks[task.id] = task
        return replace(task)

    async def get(self, task_id: str) -> ModerationTask | None:
        task = self.tasks.get(task_id)
        return replace(task) if task else None

    async def list_eligible(self, *, limit: int = 50) -> Sequence[ModerationTask]:
        eligible = [task for task in self.tasks.values() if task.status in ELIGIBLE_STATUSES]
        eligible.sort(key=lambda task: task.created_at)
        return [replace(task) for task in eligible[:limit]]

    async def mark_processing(self, task_id: str) -> ModerationTask:
        return self._update(task_id, status=TaskStatus.PROCESSING)

    async def mark_completed(self, task_id: str, result: Mapping[str, Any]) -> ModerationTask:
        return self._update(task_id, status=TaskStatus.COMPLETED, result=dict(result), last_error=None)

    async def mark_failed(self, task_id: str, *, error: str) -> ModerationTask:
        task = self._require(task_id)
        return self._update(task_id, status=TaskStatus.FAILED, retry_count=task.retry_count + 1, last_error=error)

    async def mark_error(self, task_id: str, *, error: str) -> ModerationTask:
        return self._update(task_id, status=TaskStatus.ERROR, last_error=error)

    async def reset_failed(self) -> int:
        count = 0
        for task in list(self.tasks.values()):
            if task.status in (TaskStatus.FAILED, TaskStatus.ERROR):
                self._update(task.id, status=TaskStatus.PENDING, retry_count=0, last_error=None)
                count += 1
        return count

    async def recover_interrupted(self, *, error: str = INTERRUPTED_ERROR) -> int:
        stuck = [task for task in self.tasks.values() if task.status is TaskStatus.PROCESSING]
        for task in stuck:
            await self.mark_failed(task.id, error=error)
        return len(stuck)

    async def count_by_status(self) -> Mapping[TaskStatus, int]:
        counts = {status: 0 for status in TaskStatus}
        for task in self.tasks.values():
            counts[task.status] += 1
        return counts

    def _require(self, task_id: str) -> ModerationTask:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _update(self, task_id: str, **changes: Any) -> ModerationTask:
        task = self._require(task_id)
        updated = replace(task, updated_at=self.clock(), **changes)
        self.tasks[task_id] = updated
        return replace(updated)


__all__ = [
    "ELIGIBLE_STATUSES",
    "INTERRUPTED_ERROR",
    "InMemoryTaskStore",
    "ModerationTask",
    "SKIP_REASON",
    "TERMINAL_STATUSES",
    "TaskStatus",
    "TaskStore",
    "new_task_id",
    "skip_marker",
]
