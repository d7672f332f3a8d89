"""Public upload ingestion: admission, validation, storage and task creation."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import ulid

from pixguard.admission.controller import AdmissionConfig, AdmissionController
from pixguard.errors import PixguardError, UploadBlocked, UploadValidationError
from pixguard.moderation.domain.provider import ArtifactStorage
from pixguard.moderation.domain.screening import ScreeningConfigSource
from pixguard.moderation.domain.side_effects import Blacklist
from pixguard.moderation.domain.subjects import SubjectRecord, SubjectRepository, SubjectStatus
from pixguard.moderation.domain.tasks import ModerationTask, skip_marker
from pixguard.obs import metrics
from pixguard.settings import Settings, settings

if TYPE_CHECKING:  # pragma: no cover - type-only imports
    from pixguard.moderation.workers.queue_processor import QueueProcessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IncomingUpload:
    filename: str
    payload: bytes

    @property
    def extension(self) -> str:
        return self.filename.rsplit(".", 1)[-1].lower() if "." in self.filename else ""

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass(frozen=True, slots=True)
class UploadPolicy:
    enabled: bool = True
    allowed_formats: tuple[str, ...] = ("jpg", "jpeg", "png", "gif", "webp")
    max_file_size: int = 10 * 1024 * 1024

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "UploadPolicy":
        source = source or settings
        return cls(
            enabled=source.public_uploads_enabled,
            allowed_formats=tuple(source.upload_allowed_formats),
            max_file_size=source.upload_max_file_size,
        )


@dataclass(frozen=True, slots=True)
class IngestResult:
    subject: SubjectRecord
    task: ModerationTask | None

    @property
    def path(self) -> str:
        return f"/i/{self.subject.filename}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.subject.id,
            "uuid": self.subject.ref,
            "filename": self.subject.filename,
            "format": self.subject.format,
            "size": self.subject.size_bytes,
            "url": self.path,
            "moderation_status": self.subject.moderation_status.value,
            "uploaded_at": self.subject.uploaded_at.isoformat(),
        }


class UploadIngestion:
    """Accepts a public upload and hands it to the moderation queue.

    Admission and validation errors propagate to the caller. Once the image
    record exists the upload has succeeded, so a failure to create the
    moderation task is only logged.
    """

    def __init__(
        self,
        *,
        admission: AdmissionController,
        subjects: SubjectRepository,
        storage: ArtifactStorage,
        processor: "QueueProcessor",
        screening: ScreeningConfigSource,
        blacklist: Blacklist | None = None,
        policy: UploadPolicy | None = None,
    ) -> None:
        self.admission = admission
        self.subjects = subjects
        self.storage = storage
        self.processor = processor
        self.screening = screening
        self.blacklist = blacklist
        self.policy = policy or UploadPolicy.from_settings()

    async def ingest(self, client_key: str, upload: IncomingUpload, config: AdmissionConfig | None = None) -> IngestResult:
        config = config or AdmissionConfig.from_settings()
        try:
            await self._check_allowed(client_key)
            async with self.admission.admission(client_key, config):
                self._validate(upload)
                result = await self._store(client_key, upload)
        except PixguardError as exc:
            metrics.UPLOADS_TOTAL.labels(result=exc.error_code).inc()
            raise
        metrics.UPLOADS_TOTAL.labels(result="accepted").inc()
        return result

    async def _check_allowed(self, client_key: str) -> None:
        if self.blacklist is not None and await self.blacklist.contains(client_key):
            raise UploadBlocked("uploads from this client are blocked")
        if not self.policy.enabled:
            raise UploadBlocked("public uploads are disabled")

    def _validate(self, upload: IncomingUpload) -> None:
        if upload.size == 0:
            raise UploadValidationError("no image was provided")
        if upload.extension not in self.policy.allowed_formats:
            raise UploadValidationError(
                f"unsupported image format, allowed formats: {', '.join(self.policy.allowed_formats)}"
            )
        if upload.size > self.policy.max_file_size:
            limit_mb = round(self.policy.max_file_size / 1024 / 1024)
            raise UploadValidationError(f"file exceeds the size limit ({limit_mb}MB)")

    async def _store(self, client_key: str, upload: IncomingUpload) -> IngestResult:
        ref = str(uuid.uuid4())
        filename = f"{ref}.{upload.extension}"
        await self.storage.save(filename, upload.payload)

        screening = await self.screening.load()
        record = SubjectRecord(
            id=ulid.new().str,
            ref=ref,
            filename=filename,
            client_key=client_key,
            original_name=upload.filename,
            format=upload.extension,
            size_bytes=upload.size,
        )
        if not screening.enabled:
            record.moderation_status = SubjectStatus.SKIPPED
            record.moderation_result = skip_marker()
            record.moderation_checked = True
        subject = await self.subjects.create(record)
        logger.info("upload stored", extra={"subject_id": subject.id, "size_bytes": subject.size_bytes})

        task: ModerationTask | None = None
        if screening.enabled:
            try:
                task = await self.processor.create_task(
                    subject_id=subject.id, subject_ref=subject.ref, artifact_name=subject.filename
                )
            except Exception:
                logger.exception("could not create moderation task", extra={"subject_id": subject.id})
        return IngestResult(subject=subject, task=task)


__all__ = ["IncomingUpload", "IngestResult", "UploadIngestion", "UploadPolicy"]
