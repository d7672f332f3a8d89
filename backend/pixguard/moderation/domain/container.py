"""Lightweight service container shared by the upload and moderation modules."""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg
import httpx
from redis.asyncio import Redis

from pixguard.admission.controller import AdmissionController
from pixguard.admission.leases import LeaseManager, MemoryLeaseManager, RedisLeaseManager
from pixguard.admission.rate_limit import MemoryRateLimiter, RateLimiter, RedisRateLimiter
from pixguard.infra.redis import RedisProxy, redis_client
from pixguard.moderation.domain.ingestion import UploadIngestion, UploadPolicy
from pixguard.moderation.domain.provider import (
    ArtifactStorage,
    ClassifierModerationProvider,
    ModerationProvider,
    ZeroNsfwClassifier,
)
from pixguard.moderation.domain.screening import ScreeningConfigSource, StaticScreeningConfigSource
from pixguard.moderation.domain.side_effects import (
    AsyncioTaskSink,
    Blacklist,
    DetachedTaskSink,
    InMemoryBlacklist,
    Notifier,
    NullNotifier,
)
from pixguard.moderation.domain.subjects import InMemorySubjectRepository, SubjectRepository
from pixguard.moderation.domain.tasks import InMemoryTaskStore, TaskStore
from pixguard.moderation.infra.blacklist_repo import RedisBlacklist
from pixguard.moderation.infra.http_provider import HttpModerationProvider
from pixguard.moderation.infra.notifications import WebhookNotifier
from pixguard.moderation.infra.storage import LocalArtifactStorage
from pixguard.moderation.infra.subject_repo import PostgresSubjectRepository
from pixguard.moderation.infra.task_repo import PostgresTaskStore
from pixguard.moderation.workers.queue_processor import QueueProcessor
from pixguard.moderation.workers.timers import SchedulerTimer, Timer
from pixguard.settings import settings

logger = logging.getLogger(__name__)


def build_admission_controller(redis_conn: Redis | RedisProxy | None = None) -> AdmissionController:
    """Pick the admission backend named by ``settings.admission_backend``."""
    rate_limiter: RateLimiter
    leases: LeaseManager
    if settings.admission_backend == "redis":
        conn = redis_conn if redis_conn is not None else redis_client
        rate_limiter = RedisRateLimiter(redis=conn, window_seconds=settings.upload_rate_window_seconds)
        leases = RedisLeaseManager(redis=conn, ttl_seconds=settings.upload_lease_ttl_seconds)
    else:
        rate_limiter = MemoryRateLimiter(window_seconds=settings.upload_rate_window_seconds)
        leases = MemoryLeaseManager()
    return AdmissionController(rate_limiter=rate_limiter, leases=leases)


_task_store: TaskStore = InMemoryTaskStore()
_subjects: SubjectRepository = InMemorySubjectRepository()
_storage: ArtifactStorage = LocalArtifactStorage(settings.upload_dir)
_provider: ModerationProvider = ClassifierModerationProvider(storage=_storage, classifier=ZeroNsfwClassifier())
_screening: ScreeningConfigSource = StaticScreeningConfigSource()
_blacklist: Blacklist = InMemoryBlacklist()
_notifier: Notifier = NullNotifier()
_sink: DetachedTaskSink = AsyncioTaskSink()
_timer: Timer = SchedulerTimer()
_admission: AdmissionController = build_admission_controller()
_processor: QueueProcessor
_ingestion: UploadIngestion


def _build_processor() -> QueueProcessor:
    return QueueProcessor(
        store=_task_store,
        subjects=_subjects,
        provider=_provider,
        screening=_screening,
        timer=_timer,
        blacklist=_blacklist,
        notifier=_notifier,
        sink=_sink,
        max_retries=settings.moderation_max_retries,
        poll_interval=settings.moderation_poll_interval_seconds,
        backoff_interval=settings.moderation_backoff_seconds,
    )


def _build_ingestion(policy: UploadPolicy | None = None) -> UploadIngestion:
    return UploadIngestion(
        admission=_admission,
        subjects=_subjects,
        storage=_storage,
        processor=_processor,
        screening=_screening,
        blacklist=_blacklist,
        policy=policy,
    )


_processor = _build_processor()
_ingestion = _build_ingestion()


def configure(
    *,
    task_store: Optional[TaskStore] = None,
    subjects: Optional[SubjectRepository] = None,
    storage: Optional[ArtifactStorage] = None,
    provider: Optional[ModerationProvider] = None,
    screening: Optional[ScreeningConfigSource] = None,
    blacklist: Optional[Blacklist] = None,
    notifier: Optional[Notifier] = None,
    sink: Optional[DetachedTaskSink] = None,
    timer: Optional[Timer] = None,
    admission: Optional[AdmissionController] = None,
    upload_policy: Optional[UploadPolicy] = None,
) -> None:
    """Replace collaborators and rebuild the processor and ingestion service.

    Anything not passed keeps its current value. The previous processor is
    stopped first so its timers do not keep firing.
    """
    global _task_store, _subjects, _storage, _provider, _screening, _blacklist, _notifier, _sink, _timer
    global _admission, _processor, _ingestion

    _processor.stop()
    if task_store is not None:
        _task_store = task_store
    if subjects is not None:
        _subjects = subjects
    if storage is not None:
        _storage = storage
    if provider is not None:
        _provider = provider
    if screening is not None:
        _screening = screening
    if blacklist is not None:
        _blacklist = blacklist
    if notifier is not None:
        _notifier = notifier
    if sink is not None:
        _sink = sink
    if timer is not None:
        _timer = timer
    if admission is not None:
        _admission = admission
    _processor = _build_processor()
    _ingestion = _build_ingestion(upload_policy)


async def configure_postgres(
    pool: asyncpg.Pool,
    redis_conn: Redis | RedisProxy,
    *,
    http: Optional[httpx.AsyncClient] = None,
    ensure_schema: bool = True,
) -> None:
    """Wire the production adapters: Postgres stores, Redis blacklist and HTTP integrations.

    Runs before the processor starts, so any task still marked processing was
    abandoned by a previous process and is moved back to failed.
    """
    task_store = PostgresTaskStore(pool)
    subjects = PostgresSubjectRepository(pool)
    if ensure_schema:
        await subjects.ensure_schema()
        await task_store.ensure_schema()
    recovered = await task_store.recover_interrupted()
    if recovered:
        logger.warning("requeued moderation tasks interrupted mid-processing", extra={"recovered": recovered})
    proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    storage = LocalArtifactStorage(settings.upload_dir)

    provider: ModerationProvider = ClassifierModerationProvider(storage=storage, classifier=ZeroNsfwClassifier())
    notifier: Notifier = NullNotifier()
    if http is not None and settings.screening_provider_url:
        provider = HttpModerationProvider(
            http=http,
            storage=storage,
            endpoint=settings.screening_provider_url,
            api_key=settings.screening_provider_api_key,
        )
    if http is not None and settings.notification_webhook_url:
        notifier = WebhookNotifier(http=http, url=settings.notification_webhook_url, site_url=settings.site_url)
    if isinstance(provider, ClassifierModerationProvider):
        logger.warning("no screening provider url configured; using the stub classifier")

    configure(
        task_store=task_store,
        subjects=subjects,
        storage=storage,
        provider=provider,
        blacklist=RedisBlacklist(redis=proxy),
        notifier=notifier,
        admission=build_admission_controller(proxy),
    )


def get_task_store() -> TaskStore:
    return _task_store


def get_subject_repository() -> SubjectRepository:
    return _subjects


def get_screening_source() -> ScreeningConfigSource:
    return _screening


def get_blacklist() -> Blacklist:
    return _blacklist


def get_admission_controller() -> AdmissionController:
    return _admission


def get_processor() -> QueueProcessor:
    return _processor


def get_ingestion() -> UploadIngestion:
    return _ingestion


async def shutdown() -> None:
    _processor.stop()
    _timer.shutdown()
    if isinstance(_sink, AsyncioTaskSink):
        await _sink.drain(timeout=5.0)


def reset() -> None:
    """Restore the in-memory defaults."""
    storage = LocalArtifactStorage(settings.upload_dir)
    configure(
        task_store=InMemoryTaskStore(),
        subjects=InMemorySubjectRepository(),
        storage=storage,
        provider=ClassifierModerationProvider(storage=storage, classifier=ZeroNsfwClassifier()),
        screening=StaticScreeningConfigSource(),
        blacklist=InMemoryBlacklist(),
        notifier=NullNotifier(),
        sink=AsyncioTaskSink(),
        admission=build_admission_controller(),
    )


__all__ = [
    "build_admission_controller",
    "configure",
    "configure_postgres",
    "get_admission_controller",
    "get_blacklist",
    "get_ingestion",
    "get_processor",
    "get_screening_source",
    "get_subject_repository",
    "get_task_store",
    "reset",
    "shutdown",
]
