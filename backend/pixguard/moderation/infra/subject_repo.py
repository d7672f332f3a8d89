"""PostgreSQL implementation of the image subject repository."""

from __future__ import annotations

import json
from typing import Any, Mapping

import asyncpg

from pixguard.moderation.domain.subjects import ModerationUpdate, SubjectRecord, SubjectRepository, SubjectStatus

SCHEMA = """
CREATE TABLE IF NOT EXISTS images (
    id TEXT PRIMARY KEY,
    ref TEXT NOT NULL UNIQUE,
    filename TEXT NOT NULL,
    client_key TEXT,
    original_name TEXT,
    format TEXT,
    size_bytes BIGINT NOT NULL DEFAULT 0,
    moderation_status TEXT NOT NULL DEFAULT 'pending',
    moderation_result JSONB,
    moderation_checked BOOLEAN NOT NULL DEFAULT FALSE,
    moderation_error TEXT,
    is_flagged BOOLEAN NOT NULL DEFAULT FALSE,
    uploaded_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_COLUMNS = (
    "id, ref, filename, client_key, original_name, format, size_bytes, moderation_status, moderation_result, "
    "moderation_checked, moderation_error, is_flagged, uploaded_at, updated_at"
)


class PostgresSubjectRepository(SubjectRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)

    async def create(self, record: SubjectRecord) -> SubjectRecord:
        query = f"""
        INSERT INTO images (id, ref, filename, client_key, original_name, format, size_bytes,
                            moderation_status, moderation_result, moderation_checked, uploaded_at, updated_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $11)
        RETURNING {_COLUMNS}
        """
        row = await self.pool.fetchrow(
            query,
            record.id,
            record.ref,
            record.filename,
            record.client_key,
            record.original_name,
            record.format,
            record.size_bytes,
            record.moderation_status.value,
            json.dumps(record.moderation_result) if record.moderation_result is not None else None,
            record.moderation_checked,
            record.uploaded_at,
        )
        return _subject_from_record(row)

    async def get(self, subject_id: str) -> SubjectRecord | None:
        row = await self.pool.fetchrow(f"SELECT {_COLUMNS} FROM images WHERE id = $1", subject_id)
        return _subject_from_record(row) if row else None

    async def update_moderation(self, subject_id: str, update: ModerationUpdate) -> None:
        query = """
        UPDATE images
        SET moderation_status = $2,
            moderation_error = $3,
            moderation_result = COALESCE($4::jsonb, moderation_result),
            moderation_checked = COALESCE($5, moderation_checked),
            is_flagged = COALESCE($6, is_flagged),
            updated_at = NOW()
        WHERE id = $1
        """
        await self.pool.execute(
            query,
            subject_id,
            update.status.value,
            update.error,
            json.dumps(dict(update.result)) if update.result is not None else None,
            update.checked,
            update.is_flagged,
        )


def _subject_from_record(row: Mapping[str, Any]) -> SubjectRecord:
    result = row["moderation_result"]
    if isinstance(result, str):
        result = json.loads(result)
    return SubjectRecord(
        id=row["id"],
        ref=row["ref"],
        filename=row["filename"],
        client_key=row["client_key"],
        original_name=row["original_name"],
        format=row["format"],
        size_bytes=int(row["size_bytes"]),
        moderation_status=SubjectStatus(row["moderation_status"]),
        moderation_result=result,
        moderation_checked=bool(row["moderation_checked"]),
        moderation_error=row["moderation_error"],
        is_flagged=bool(row["is_flagged"]),
        uploaded_at=row["uploaded_at"],
        updated_at=row["updated_at"],
    )


__all__ = ["PostgresSubjectRepository", "SCHEMA"]
