"""Best-effort collaborators the moderation queue calls after a verdict."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Coroutine, MutableMapping, Protocol

from pixguard.moderation.domain.provider import Verdict
from pixguard.obs import metrics

logger = logging.getLogger(__name__)


class Blacklist(Protocol):
    async def add(self, client_key: str, reason: str) -> None:
        ...

    async def contains(self, client_key: str) -> bool:
        ...


@dataclass
class InMemoryBlacklist(Blacklist):
    entries: MutableMapping[str, str] = field(default_factory=dict)

    async def add(self, client_key: str, reason: str) -> None:
        self.entries.setdefault(client_key, reason)

    async def contains(self, client_key: str) -> bool:
        return client_key in self.entries


@dataclass(frozen=True, slots=True)
class NotificationSubject:
    """The image a notification is about."""

    id: str
    ref: str
    filename: str

    @property
    def extension(self) -> str:
        return self.filename.rsplit(".", 1)[-1] if "." in self.filename else ""

    def public_url(self, site_url: str) -> str | None:
        if not site_url:
            return None
        return f"{site_url.rstrip('/')}/i/{self.ref}.{self.extension}"


class Notifier(Protocol):
    async def notify(self, subject: NotificationSubject, verdict: Verdict) -> None:
        ...


class NullNotifier(Notifier):
    async def notify(self, subject: NotificationSubject, verdict: Verdict) -> None:
        logger.debug("notification dropped; no notifier configured", extra={"subject_id": subject.id})


class DetachedTaskSink(Protocol):
    """Accepts coroutines that must run without the caller waiting on them."""

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        ...


class AsyncioTaskSink(DetachedTaskSink):
    """Runs detached coroutines as asyncio tasks and logs their failures.

    References are kept until each task finishes so the event loop cannot
    garbage collect them mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            metrics.SIDE_EFFECT_FAILURES_TOTAL.labels(kind=task.get_name().split(":", 1)[0]).inc()
            logger.error("detached task failed", exc_info=exc, extra={"detached_task": task.get_name()})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)


__all__ = [
    "AsyncioTaskSink",
    "Blacklist",
    "DetachedTaskSink",
    "InMemoryBlacklist",
    "NotificationSubject",
    "Notifier",
    "NullNotifier",
]
