import pytest

from pixguard.admission.controller import AdmissionConfig, AdmissionController
from pixguard.admission.leases import MemoryLeaseManager
from pixguard.admission.rate_limit import MemoryRateLimiter
from pixguard.errors import AdmissionRejected, TaskConflict, UploadBlocked, UploadValidationError
from pixguard.moderation.domain.ingestion import IncomingUpload, UploadIngestion, UploadPolicy
from pixguard.moderation.domain.provider import ClassifierModerationProvider, ZeroNsfwClassifier
from pixguard.moderation.domain.screening import ScreeningConfig, StaticScreeningConfigSource
from pixguard.moderation.domain.side_effects import InMemoryBlacklist
from pixguard.moderation.domain.subjects import InMemorySubjectRepository, SubjectStatus
from pixguard.moderation.domain.tasks import InMemoryTaskStore, TaskStatus
from pixguard.moderation.infra.storage import LocalArtifactStorage
from pixguard.moderation.workers.queue_processor import ProcessorState, QueueProcessor
from pixguard.moderation.workers.timers import ManualTimer

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
STRICT = AdmissionConfig(rate_limit=10, allow_concurrent=False)


class ConflictingStore(InMemoryTaskStore):
    async def create(self, *, subject_id, subject_ref, artifact_name):
        raise TaskConflict("already queued")


def _ingestion(tmp_path, *, enabled=True, store=None, policy=None):
    storage = LocalArtifactStorage(tmp_path)
    subjects = InMemorySubjectRepository()
    screening = StaticScreeningConfigSource(ScreeningConfig(enabled=enabled))
    leases = MemoryLeaseManager()
    blacklist = InMemoryBlacklist()
    processor = QueueProcessor(
        store=store or InMemoryTaskStore(),
        subjects=subjects,
        provider=ClassifierModerationProvider(storage=storage, classifier=ZeroNsfwClassifier()),
        screening=screening,
        timer=ManualTimer(),
    )
    ingestion = UploadIngestion(
        admission=AdmissionController(rate_limiter=MemoryRateLimiter(window_seconds=60), leases=leases),
        subjects=subjects,
        storage=storage,
        processor=processor,
        screening=screening,
        blacklist=blacklist,
        policy=policy or UploadPolicy(),
    )
    return ingestion, leases, blacklist


@pytest.mark.asyncio
async def test_accepted_upload_is_stored_and_queued(tmp_path):
    ingestion, leases, _ = _ingestion(tmp_path)

    result = await ingestion.ingest("203.0.113.7", IncomingUpload(filename="cat.PNG", payload=PNG), STRICT)

    assert result.subject.moderation_status is SubjectStatus.PENDING
    assert result.subject.filename == f"{result.subject.ref}.png"
    assert (tmp_path / result.subject.filename).read_bytes() == PNG
    assert result.task is not None
    assert result.task.status is TaskStatus.PENDING
    assert ingestion.processor.state is ProcessorState.POLLING
    assert not leases.is_held("203.0.113.7")
    assert result.to_dict()["url"] == f"/i/{result.subject.filename}"


@pytest.mark.asyncio
async def test_screening_disabled_marks_subject_skipped_without_task(tmp_path):
    ingestion, _, _ = _ingestion(tmp_path, enabled=False)

    result = await ingestion.ingest("k", IncomingUpload(filename="a.jpg", payload=PNG), STRICT)

    assert result.task is None
    assert result.subject.moderation_status is SubjectStatus.SKIPPED
    assert result.subject.moderation_checked
    assert result.subject.moderation_result["skipped"] is True
    assert ingestion.processor.state is ProcessorState.IDLE


@pytest.mark.asyncio
async def test_unsupported_format_is_rejected_and_lease_released(tmp_path):
    ingestion, leases, _ = _ingestion(tmp_path)

    with pytest.raises(UploadValidationError):
        await ingestion.ingest("k", IncomingUpload(filename="doc.pdf", payload=PNG), STRICT)

    assert not leases.is_held("k")
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_oversized_and_empty_uploads_are_rejected(tmp_path):
    ingestion, _, _ = _ingestion(tmp_path, policy=UploadPolicy(max_file_size=16))

    with pytest.raises(UploadValidationError):
        await ingestion.ingest("k", IncomingUpload(filename="a.png", payload=PNG), STRICT)
    with pytest.raises(UploadValidationError):
        await ingestion.ingest("k", IncomingUpload(filename="a.png", payload=b""), STRICT)


@pytest.mark.asyncio
async def test_blacklisted_client_is_blocked(tmp_path):
    ingestion, _, blacklist = _ingestion(tmp_path)
    await blacklist.add("198.51.100.4", "flagged upload")

    with pytest.raises(UploadBlocked):
        await ingestion.ingest("198.51.100.4", IncomingUpload(filename="a.png", payload=PNG), STRICT)


@pytest.mark.asyncio
async def test_disabled_public_uploads_are_blocked(tmp_path):
    ingestion, _, _ = _ingestion(tmp_path, policy=UploadPolicy(enabled=False))

    with pytest.raises(UploadBlocked):
        await ingestion.ingest("k", IncomingUpload(filename="a.png", payload=PNG), STRICT)


@pytest.mark.asyncio
async def test_rate_limit_applies_across_uploads(tmp_path):
    ingestion, _, _ = _ingestion(tmp_path, enabled=False)
    config = AdmissionConfig(rate_limit=2, allow_concurrent=False)
    for _ in range(2):
        await ingestion.ingest("k", IncomingUpload(filename="a.png", payload=PNG), config)

    with pytest.raises(AdmissionRejected) as excinfo:
        await ingestion.ingest("k", IncomingUpload(filename="a.png", payload=PNG), config)
    assert excinfo.value.retry_after and excinfo.value.retry_after > 0


@pytest.mark.asyncio
async def test_task_creation_failure_does_not_fail_upload(tmp_path):
    ingestion, _, _ = _ingestion(tmp_path, store=ConflictingStore())

    result = await ingestion.ingest("k", IncomingUpload(filename="a.webp", payload=PNG), STRICT)

    assert result.task is None
    assert result.subject.moderation_status is SubjectStatus.PENDING
