"""PostgreSQL implementation of the moderation task store."""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

import asyncpg

from pixguard.errors import TaskConflict, TaskNotFound
from pixguard.moderation.domain.tasks import INTERRUPTED_ERROR, ModerationTask, TaskStatus, TaskStore, new_task_id

SCHEMA = """
CREATE TABLE IF NOT EXISTS moderation_task (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL,
    subject_ref TEXT NOT NULL,
    artifact_name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
    result JSONB,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS moderation_task_eligible_idx
    ON moderation_task (created_at)
    WHERE status IN ('pending', 'failed');
CREATE UNIQUE INDEX IF NOT EXISTS moderation_task_live_subject_idx
    ON moderation_task (subject_id)
    WHERE status IN ('pending', 'processing', 'failed');
"""

# Rows left in 'processing' by a crashed process are never selected again;
# recover_interrupted() sweeps them back to 'failed' at startup.

_COLUMNS = "id, subject_id, subject_ref, artifact_name, status, retry_count, result, last_error, created_at, updated_at"


class PostgresTaskStore(TaskStore):
    """Asyncpg-backed task store. Each mutation is one UPDATE ... RETURNING."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)

    async def create(self, *, subject_id: str, subject_ref: str, artifact_name: str) -> ModerationTask:
        query = f"""
        INSERT INTO moderation_task (id, subject_id, subject_ref, artifact_name, status)
        VALUES ($1, $2, $3, $4, 'pending')
        RETURNING {_COLUMNS}
        """
        try:
            record = await self.pool.fetchrow(query, new_task_id(), subject_id, subject_ref, artifact_name)
        except asyncpg.UniqueViolationError as exc:
            raise TaskConflict(f"subject {subject_id} already has a live moderation task") from exc
        return _task_from_record(record)

    async def get(self, task_id: str) -> ModerationTask | None:
        record = await self.pool.fetchrow(f"SELECT {_COLUMNS} FROM moderation_task WHERE id = $1", task_id)
        return _task_from_record(record) if record else None

    async def list_eligible(self, *, limit: int = 50) -> Sequence[ModerationTask]:
        query = f"""
        SELECT {_COLUMNS}
        FROM moderation_task
        WHERE status IN ('pending', 'failed')
        ORDER BY created_at ASC, id ASC
        LIMIT $1
        """
        records = await self.pool.fetch(query, limit)
        return [_task_from_record(record) for record in records]

    async def mark_processing(self, task_id: str) -> ModerationTask:
        return await self._update(task_id, "status = 'processing'")

    async def mark_completed(self, task_id: str, result: Mapping[str, Any]) -> ModerationTask:
        return await self._update(
            task_id,
            "status = 'completed', result = $2::jsonb, last_error = NULL",
            json.dumps(dict(result)),
        )

    async def mark_failed(self, task_id: str, *, error: str) -> ModerationTask:
        return await self._update(task_id, "status = 'failed', retry_count = retry_count + 1, last_error = $2", error)

    async def mark_error(self, task_id: str, *, error: str) -> ModerationTask:
        return await self._update(task_id, "status = 'error', last_error = $2", error)

    async def reset_failed(self) -> int:
        query = """
        UPDATE moderation_task
        SET status = 'pending', retry_count = 0, last_error = NULL, updated_at = NOW()
        WHERE status IN ('failed', 'error')
        """
        result = await self.pool.execute(query)
        return _affected_rows(result)

    async def recover_interrupted(self, *, error: str = INTERRUPTED_ERROR) -> int:
        query = """
        UPDATE moderation_task
        SET status = 'failed', retry_count = retry_count + 1, last_error = $1, updated_at = NOW()
        WHERE status = 'processing'
        """
        result = await self.pool.execute(query, error)
        return _affected_rows(result)

    async def count_by_status(self) -> Mapping[TaskStatus, int]:
        records = await self.pool.fetch("SELECT status, COUNT(*) AS total FROM moderation_task GROUP BY status")
        counts = {status: 0 for status in TaskStatus}
        for record in records:
            counts[TaskStatus(record["status"])] = int(record["total"])
        return counts

    async def _update(self, task_id: str, assignments: str, *args: Any) -> ModerationTask:
        query = f"""
        UPDATE moderation_task
        SET {assignments}, updated_at = NOW()
        WHERE id = $1
        RETURNING {_COLUMNS}
        """
        record = await self.pool.fetchrow(query, task_id, *args)
        if record is None:
            raise TaskNotFound(task_id)
        return _task_from_record(record)


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _task_from_record(record: Mapping[str, Any]) -> ModerationTask:
    result = record["result"]
    if isinstance(result, str):
        result = json.loads(result)
    return ModerationTask(
        id=record["id"],
        subject_id=record["subject_id"],
        subject_ref=record["subject_ref"],
        artifact_name=record["artifact_name"],
        status=TaskStatus(record["status"]),
        retry_count=int(record["retry_count"]),
        result=result,
        last_error=record["last_error"],
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


__all__ = ["PostgresTaskStore", "SCHEMA"]
