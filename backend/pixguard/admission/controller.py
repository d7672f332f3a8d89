"""Upload admission gate combining the rate limiter and concurrency leases."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, ClassVar, Optional, Union

from pixguard.admission.leases import LeaseManager
from pixguard.admission.rate_limit import RateLimiter
from pixguard.errors import AdmissionRejected
from pixguard.obs import metrics
from pixguard.settings import Settings, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AdmissionConfig:
    """Per-request admission knobs, normally derived from settings."""

    rate_limit: int = 10
    allow_concurrent: bool = False

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "AdmissionConfig":
        source = source or settings
        return cls(rate_limit=source.upload_rate_limit, allow_concurrent=source.upload_allow_concurrent)


@dataclass(frozen=True, slots=True)
class Accepted:
    outcome: ClassVar[str] = "accepted"

    lease_token: Optional[str] = None

    @property
    def lease_held(self) -> bool:
        return self.lease_token is not None


@dataclass(frozen=True, slots=True)
class RateLimited:
    outcome: ClassVar[str] = "rate_limited"

    retry_after_seconds: int


@dataclass(frozen=True, slots=True)
class ConcurrencyBusy:
    outcome: ClassVar[str] = "concurrency_busy"


Decision = Union[Accepted, RateLimited, ConcurrencyBusy]


class AdmissionController:
    """Decides whether a client may start a new upload.

    The rate limit is checked first. The concurrency lease is only consulted
    when the configuration disallows parallel uploads per client, and only
    after the rate limit has admitted the request, so a rejected request
    never holds a lease. A request turned away by the lease gives its rate
    slot back; only admitted uploads count against the budget.
    """

    def __init__(self, *, rate_limiter: RateLimiter, leases: LeaseManager) -> None:
        self._rate_limiter = rate_limiter
        self._leases = leases

    async def admit(self, client_key: str, config: AdmissionConfig) -> Decision:
        rate = await self._rate_limiter.check_rate_limit(client_key, config.rate_limit)
        decision: Decision
        if not rate.allowed:
            decision = RateLimited(retry_after_seconds=rate.retry_after_seconds)
        elif config.allow_concurrent:
            decision = Accepted()
        else:
            token = await self._leases.try_acquire(client_key)
            if token is not None:
                decision = Accepted(lease_token=token)
            else:
                await self._rate_limiter.refund(client_key, rate)
                decision = ConcurrencyBusy()
        metrics.ADMISSION_DECISIONS_TOTAL.labels(outcome=decision.outcome).inc()
        if not isinstance(decision, Accepted):
            logger.info("upload admission rejected", extra={"client_key": client_key, "outcome": decision.outcome})
        return decision

    async def release(self, client_key: str, decision: Decision) -> None:
        """Release the lease an accepted decision holds; a no-op otherwise."""
        if isinstance(decision, Accepted) and decision.lease_token is not None:
            await self._leases.release(client_key, decision.lease_token)

    @asynccontextmanager
    async def admission(self, client_key: str, config: AdmissionConfig) -> AsyncIterator[Accepted]:
        """Admit the client for the duration of the block.

        Raises :class:`AdmissionRejected` when the gate refuses the request.
        The lease taken on admission is released on every exit path.
        """
        decision = await self.admit(client_key, config)
        if isinstance(decision, RateLimited):
            raise AdmissionRejected(
                "rate_limited",
                f"too many uploads, retry in {decision.retry_after_seconds} seconds",
                retry_after=decision.retry_after_seconds,
            )
        if isinstance(decision, ConcurrencyBusy):
            raise AdmissionRejected("concurrency_busy", "wait for the previous upload to finish")
        try:
            yield decision
        finally:
            await self.release(client_key, decision)


__all__ = [
    "Accepted",
    "AdmissionConfig",
    "AdmissionController",
    "ConcurrencyBusy",
    "Decision",
    "RateLimited",
]
