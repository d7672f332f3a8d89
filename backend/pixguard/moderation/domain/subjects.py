"""Image records that moderation results are propagated to."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, MutableMapping, Protocol


class SubjectStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SubjectRecord:
    """An uploaded image as the rest of the site sees it."""

    id: str
    ref: str
    filename: str
    client_key: str | None
    original_name: str | None = None
    format: str | None = None
    size_bytes: int = 0
    moderation_status: SubjectStatus = SubjectStatus.PENDING
    moderation_result: dict[str, Any] | None = None
    moderation_checked: bool = False
    moderation_error: str | None = None
    is_flagged: bool = False
    uploaded_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def extension(self) -> str:
        return self.filename.rsplit(".", 1)[-1] if "." in self.filename else ""


@dataclass(frozen=True, slots=True)
class ModerationUpdate:
    """Moderation fields to write onto a subject record.

    ``error`` is always written, so ``None`` clears a previous error. The other
    optional fields are left untouched when ``None``.
    """

    status: SubjectStatus
    result: Mapping[str, Any] | None = None
    checked: bool | None = None
    is_flagged: bool | None = None
    error: str | None = None


class SubjectRepository(Protocol):
    async def create(self, record: SubjectRecord) -> SubjectRecord:
        ...

    async def get(self, subject_id: str) -> SubjectRecord | None:
        ...

    async def update_moderation(self, subject_id: str, update: ModerationUpdate) -> None:
        ...


@dataclass
class InMemorySubjectRepository(SubjectRepository):
    records: MutableMapping[str, SubjectRecord] = field(default_factory=dict)
    clock: Callable[[], datetime] = _utcnow

    async def create(self, record: SubjectRecord) -> SubjectRecord:
        self.records[record.id] = replace(record)
        return replace(record)

    async def get(self, subject_id: str) -> SubjectRecord | None:
        record = self.records.get(subject_id)
        return replace(record) if record else None

    async def update_moderation(self, subject_id: str, update: ModerationUpdate) -> None:
        record = self.records.get(subject_id)
        if record is None:
            return
        record.moderation_status = update.status
        record.moderation_error = update.error
        if update.result is not None:
            record.moderation_result = dict(update.result)
        if update.checked is not None:
            record.moderation_checked = update.checked
        if update.is_flagged is not None:
            record.is_flagged = update.is_flagged
        record.updated_at = self.clock()


__all__ = [
    "InMemorySubjectRepository",
    "ModerationUpdate",
    "SubjectRecord",
    "SubjectRepository",
    "SubjectStatus",
]
