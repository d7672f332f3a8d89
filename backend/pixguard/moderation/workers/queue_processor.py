"""Single-flight processor for the moderation task queue."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from pixguard.errors import MaxRetriesExceeded, ProviderRejected, ProviderUnavailable
from pixguard.moderation.domain.provider import ModerationProvider, ProviderOutcome, Verdict
from pixguard.moderation.domain.screening import ScreeningConfig, ScreeningConfigSource
from pixguard.moderation.domain.side_effects import (
    AsyncioTaskSink,
    Blacklist,
    DetachedTaskSink,
    NotificationSubject,
    Notifier,
    NullNotifier,
)
from pixguard.moderation.domain.subjects import ModerationUpdate, SubjectRecord, SubjectRepository, SubjectStatus
from pixguard.moderation.domain.tasks import ModerationTask, TaskStatus, TaskStore, skip_marker
from pixguard.moderation.workers.timers import Timer, TimerHandle
from pixguard.obs import metrics
from pixguard.obs.logging import bind_context, reset_context

logger = logging.getLogger(__name__)

POLL_JOB = "moderation-queue:poll"
RESUME_JOB = "moderation-queue:resume"


class ProcessorState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    BACKING_OFF = "backing_off"


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """What one poll did. ``status`` is a task status, ``idle`` or ``busy``."""

    task_id: str | None
    status: str
    backoff: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class QueueStatus:
    pending: int
    processing: int
    completed: int
    failed: int
    error: int
    total: int
    is_processing: bool
    state: ProcessorState

    @classmethod
    def from_counts(cls, counts: Mapping[TaskStatus, int], *, is_processing: bool, state: ProcessorState) -> "QueueStatus":
        values = {status: int(counts.get(status, 0)) for status in TaskStatus}
        return cls(
            pending=values[TaskStatus.PENDING],
            processing=values[TaskStatus.PROCESSING],
            completed=values[TaskStatus.COMPLETED],
            failed=values[TaskStatus.FAILED],
            error=values[TaskStatus.ERROR],
            total=sum(values.values()),
            is_processing=is_processing,
            state=state,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "error": self.error,
            "total": self.total,
            "is_processing": self.is_processing,
            "state": self.state.value,
        }


class QueueProcessor:
    """Drains moderation tasks one at a time.

    Polling is driven by a repeating timer. When the provider is unavailable
    the repeating timer is cancelled and a one-shot timer resumes polling
    after ``backoff_interval``. A poll that arrives while another is still
    running returns immediately, so at most one task is in flight.

    Provider, store and subject failures are absorbed here: they are recorded
    on the task and the subject, never raised to the caller of ``poll_once``.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        subjects: SubjectRepository,
        provider: ModerationProvider,
        screening: ScreeningConfigSource,
        timer: Timer,
        blacklist: Blacklist | None = None,
        notifier: Notifier | None = None,
        sink: DetachedTaskSink | None = None,
        max_retries: int = 3,
        poll_interval: float = 5.0,
        backoff_interval: float = 60.0,
        batch_size: int = 50,
    ) -> None:
        self.store = store
        self.subjects = subjects
        self.provider = provider
        self.screening = screening
        self.timer = timer
        self.blacklist = blacklist
        self.notifier = notifier or NullNotifier()
        self.sink = sink or AsyncioTaskSink()
        self.max_retries = max_retries
        self.poll_interval = poll_interval
        self.backoff_interval = backoff_interval
        self.batch_size = batch_size
        self._state = ProcessorState.IDLE
        self._busy = False
        self._halted = False
        self._poll_job: TimerHandle | None = None
        self._resume_job: TimerHandle | None = None

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._busy

    # lifecycle

    def start(self) -> None:
        self._halted = False
        if self._state is not ProcessorState.IDLE:
            return
        logger.info("moderation queue processor starting", extra={"poll_interval": self.poll_interval})
        self._arm_polling()

    def stop(self) -> None:
        self._halted = True
        self._cancel_jobs()
        if self._state is not ProcessorState.IDLE:
            logger.info("moderation queue processor stopped")
        self._state = ProcessorState.IDLE

    def ensure_running(self) -> None:
        """Start polling if the processor is idle. A backoff in progress is left alone."""
        if self._halted:
            logger.debug("moderation queue processor halted; not starting")
            return
        if self._state is ProcessorState.IDLE:
            self._arm_polling()

    def _arm_polling(self) -> None:
        self._state = ProcessorState.POLLING
        self._poll_job = self.timer.call_every(self.poll_interval, self._on_tick, name=POLL_JOB, immediate=True)

    def _cancel_jobs(self) -> None:
        for job in (self._poll_job, self._resume_job):
            if job is not None:
                job.cancel()
        self._poll_job = None
        self._resume_job = None

    def _enter_backoff(self) -> None:
        if self._halted:
            return
        self._cancel_jobs()
        self._state = ProcessorState.BACKING_OFF
        metrics.QUEUE_BACKOFFS_TOTAL.inc()
        logger.warning("moderation provider unavailable; pausing queue for %ss", self.backoff_interval)
        self._resume_job = self.timer.call_later(self.backoff_interval, self._resume, name=RESUME_JOB)

    async def _resume(self) -> None:
        self._resume_job = None
        if self._halted or self._state is not ProcessorState.BACKING_OFF:
            return
        logger.info("moderation queue resuming after backoff")
        self._arm_polling()

    async def _on_tick(self) -> None:
        if self._state is not ProcessorState.POLLING:
            return
        await self.poll_once()

    # polling

    async def poll_once(self) -> ProcessResult:
        if self._busy:
            return ProcessResult(task_id=None, status="busy")
        self._busy = True
        try:
            task = await self.select_next()
            if task is None:
                return ProcessResult(task_id=None, status="idle")
            result = await self.process_task(task)
        finally:
            self._busy = False
        if result.backoff:
            self._enter_backoff()
        return result

    async def select_next(self) -> ModerationTask | None:
        """Return the oldest eligible task, escalating exhausted ones on the way."""
        while True:
            candidates = await self.store.list_eligible(limit=self.batch_size)
            for task in candidates:
                if task.status is TaskStatus.FAILED and task.retry_count >= self.max_retries:
                    await self._escalate(task)
                    continue
                return task
            if len(candidates) < self.batch_size:
                return None

    async def _escalate(self, task: ModerationTask) -> None:
        exc = MaxRetriesExceeded("max retries exceeded")
        await self.store.mark_error(task.id, error=exc.detail)
        metrics.QUEUE_ESCALATIONS_TOTAL.inc()
        logger.error(
            "moderation task escalated to error",
            extra={"task_id": task.id, "subject_id": task.subject_id, "retry_count": task.retry_count, "error_code": exc.error_code},
        )

    async def process_task(self, task: ModerationTask) -> ProcessResult:
        tokens = bind_context(task_id=task.id)
        start = time.perf_counter()
        status = "error"
        try:
            await self.store.mark_processing(task.id)
            config = await self.screening.load()
            if not config.enabled:
                await self._skip(task)
                status = "skipped"
                return ProcessResult(task_id=task.id, status=TaskStatus.COMPLETED.value)

            outcome = await self._invoke_provider(task, config)
            if outcome.success:
                await self._complete(task, outcome.verdict(), config)
                status = TaskStatus.COMPLETED.value
                return ProcessResult(task_id=task.id, status=TaskStatus.COMPLETED.value)

            error = outcome.error or "moderation failed"
            await self._fail(task, error)
            status = TaskStatus.FAILED.value
            return ProcessResult(task_id=task.id, status=TaskStatus.FAILED.value, backoff=outcome.unavailable, error=error)
        except Exception as exc:
            logger.exception("moderation task crashed: task_id=%s", task.id)
            metrics.SCAN_FAILURES_TOTAL.labels(reason=exc.__class__.__name__).inc()
            error = str(exc) or exc.__class__.__name__
            status = TaskStatus.FAILED.value
            try:
                await self._fail(task, error)
            except Exception:
                logger.exception("could not record moderation failure: task_id=%s", task.id)
            return ProcessResult(task_id=task.id, status=TaskStatus.FAILED.value, backoff=True, error=error)
        finally:
            metrics.SCAN_LATENCY_SECONDS.observe(time.perf_counter() - start)
            metrics.SCAN_JOBS_TOTAL.labels(status=status).inc()
            reset_context(tokens)

    async def _invoke_provider(self, task: ModerationTask, config: ScreeningConfig) -> ProviderOutcome:
        try:
            outcome = await asyncio.wait_for(
                self.provider.moderate(task.subject_id, task.artifact_name, config),
                timeout=config.provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            metrics.SCAN_FAILURES_TOTAL.labels(reason="timeout").inc()
            return ProviderOutcome.failure(
                f"provider timed out after {config.provider_timeout_seconds:g}s", unavailable=True
            )
        except ProviderUnavailable as exc:
            metrics.SCAN_FAILURES_TOTAL.labels(reason="unavailable").inc()
            return ProviderOutcome.failure(exc.detail, unavailable=True)
        except ProviderRejected as exc:
            metrics.SCAN_FAILURES_TOTAL.labels(reason="rejected").inc()
            return ProviderOutcome.failure(exc.detail)
        if not outcome.success:
            metrics.SCAN_FAILURES_TOTAL.labels(reason="unavailable" if outcome.unavailable else "rejected").inc()
        return outcome

    async def _skip(self, task: ModerationTask) -> None:
        marker = skip_marker()
        await self.subjects.update_moderation(
            task.subject_id,
            ModerationUpdate(status=SubjectStatus.SKIPPED, result=marker, checked=True),
        )
        await self.store.mark_completed(task.id, marker)
        logger.info("content screening disabled; task skipped", extra={"subject_id": task.subject_id})

    async def _complete(self, task: ModerationTask, verdict: Verdict, config: ScreeningConfig) -> None:
        result = verdict.to_dict()
        subject = await self.subjects.get(task.subject_id)
        await self.subjects.update_moderation(
            task.subject_id,
            ModerationUpdate(status=SubjectStatus.COMPLETED, result=result, checked=True, is_flagged=verdict.is_flagged),
        )
        await self.store.mark_completed(task.id, result)

        if verdict.is_flagged:
            metrics.SCAN_FLAGGED_TOTAL.labels(provider=verdict.provider).inc()
            logger.warning(
                "image flagged by moderation provider",
                extra={"subject_id": task.subject_id, "score": verdict.score, "provider": verdict.provider},
            )
            if config.auto_blacklist:
                await self._blacklist_submitter(subject, verdict)

        notification = NotificationSubject(
            id=task.subject_id,
            ref=task.subject_ref,
            filename=subject.filename if subject else task.artifact_name,
        )
        self.sink.spawn(self.notifier.notify(notification, verdict), name=f"notify:{task.id}")

    async def _blacklist_submitter(self, subject: SubjectRecord | None, verdict: Verdict) -> None:
        if self.blacklist is None or subject is None:
            return
        client_key = subject.client_key
        if not client_key or client_key == "unknown":
            logger.info("flagged image has no usable client key; not blacklisting", extra={"subject_id": subject.id})
            return
        try:
            await self.blacklist.add(client_key, f"flagged image {subject.id} (score {verdict.score:.2f})")
        except Exception:
            metrics.SIDE_EFFECT_FAILURES_TOTAL.labels(kind="blacklist").inc()
            logger.exception("auto blacklist failed", extra={"subject_id": subject.id})
            return
        logger.warning("client blacklisted after flagged upload", extra={"subject_id": subject.id})

    async def _fail(self, task: ModerationTask, error: str) -> None:
        await self.subjects.update_moderation(task.subject_id, ModerationUpdate(status=SubjectStatus.FAILED, error=error))
        updated = await self.store.mark_failed(task.id, error=error)
        logger.warning(
            "moderation task failed: attempt %s/%s",
            updated.retry_count,
            self.max_retries,
            extra={"subject_id": task.subject_id, "error": error},
        )

    # admin

    async def create_task(self, *, subject_id: str, subject_ref: str, artifact_name: str) -> ModerationTask:
        task = await self.store.create(subject_id=subject_id, subject_ref=subject_ref, artifact_name=artifact_name)
        self.ensure_running()
        return task

    async def get_queue_status(self) -> QueueStatus:
        counts = await self.store.count_by_status()
        metrics.observe_backlog((status.value, value) for status, value in counts.items())
        return QueueStatus.from_counts(counts, is_processing=self._busy, state=self._state)

    async def retry_failed_tasks(self) -> int:
        count = await self.store.reset_failed()
        if count:
            logger.info("reset %s failed moderation tasks", count)
            self.ensure_running()
        return count


__all__ = ["POLL_JOB", "ProcessResult", "ProcessorState", "QueueProcessor", "QueueStatus", "RESUME_JOB"]
