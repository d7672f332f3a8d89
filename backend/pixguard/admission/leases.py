"""Single-holder upload leases keyed by client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import ulid
from redis.asyncio import Redis
from redis.exceptions import WatchError

from pixguard.admission.table import AdmissionTable
from pixguard.infra.redis import RedisProxy
from pixguard.obs import metrics


class LeaseManager(Protocol):
    async def try_acquire(self, client_key: str) -> Optional[str]:
        """Return a holder token when the lease was free, ``None`` otherwise."""
        ...

    async def release(self, client_key: str, token: str) -> None:
        """Drop the lease only while ``token`` still holds it."""
        ...


def _new_token() -> str:
    return ulid.new().str


class MemoryLeaseManager(LeaseManager):
    """Leases stored as holder tokens in the shared admission table."""

    def __init__(self, table: Optional[AdmissionTable[str, str]] = None) -> None:
        self._table: AdmissionTable[str, str] = table if table is not None else AdmissionTable()

    async def try_acquire(self, client_key: str) -> Optional[str]:
        return self.acquire(client_key)

    def acquire(self, client_key: str) -> Optional[str]:
        token = _new_token()
        if not self._table.compare_and_swap(client_key, None, token):
            return None
        metrics.ADMISSION_LEASES_ACTIVE.inc()
        return token

    async def release(self, client_key: str, token: str) -> None:
        if self._table.compare_and_swap(client_key, token, None):
            metrics.ADMISSION_LEASES_ACTIVE.dec()

    def is_held(self, client_key: str) -> bool:
        return self._table.get(client_key) is not None


@dataclass
class RedisLeaseManager(LeaseManager):
    """Leases backed by ``SET NX`` so several API processes share them.

    Keys carry a TTL so a crashed holder cannot block its client forever.
    The key stores the holder token; a holder whose lease expired and was
    taken over cannot release the new holder's lease.
    """

    redis: Redis | RedisProxy
    ttl_seconds: int = 300
    prefix: str = "lease:upload"

    async def try_acquire(self, client_key: str) -> Optional[str]:
        token = _new_token()
        acquired = await self.redis.set(self._key(client_key), token, nx=True, ex=max(1, int(self.ttl_seconds)))
        return token if acquired else None

    async def release(self, client_key: str, token: str) -> None:
        key = self._key(client_key)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    holder = await pipe.get(key)
                    if holder is None or _decode(holder) != token:
                        await pipe.unwatch()
                        return
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return
                except WatchError:
                    continue

    async def is_held(self, client_key: str) -> bool:
        return bool(await self.redis.exists(self._key(client_key)))

    def _key(self, client_key: str) -> str:
        return f"{self.prefix}:{client_key}"


def _decode(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


__all__ = ["LeaseManager", "MemoryLeaseManager", "RedisLeaseManager"]
