"""Upload admission gate: rate limits and per-client concurrency leases."""

from pixguard.admission.controller import (
    Accepted,
    AdmissionConfig,
    AdmissionController,
    ConcurrencyBusy,
    Decision,
    RateLimited,
)
from pixguard.admission.leases import LeaseManager, MemoryLeaseManager, RedisLeaseManager
from pixguard.admission.rate_limit import MemoryRateLimiter, RateLimiter, RateLimitResult, RedisRateLimiter

__all__ = [
    "Accepted",
    "AdmissionConfig",
    "AdmissionController",
    "ConcurrencyBusy",
    "Decision",
    "LeaseManager",
    "MemoryLeaseManager",
    "MemoryRateLimiter",
    "RateLimitResult",
    "RateLimited",
    "RateLimiter",
    "RedisLeaseManager",
    "RedisRateLimiter",
]
