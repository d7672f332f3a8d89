"""Redis-backed client blacklist."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from redis.asyncio import Redis

from pixguard.infra.redis import RedisProxy
from pixguard.moderation.domain.side_effects import Blacklist

logger = logging.getLogger(__name__)


@dataclass
class RedisBlacklist(Blacklist):
    """Stores blacklisted client keys in one hash, keyed by client, valued by reason."""

    redis: Redis | RedisProxy
    key: str = "blacklist:upload"

    async def add(self, client_key: str, reason: str) -> None:
        entry = f"{datetime.now(timezone.utc).isoformat()} {reason}"
        added = await self.redis.hsetnx(self.key, client_key, entry)
        if added:
            logger.info("client key blacklisted", extra={"reason": reason})

    async def contains(self, client_key: str) -> bool:
        return bool(await self.redis.hexists(self.key, client_key))

    async def remove(self, client_key: str) -> None:
        await self.redis.hdel(self.key, client_key)


__all__ = ["RedisBlacklist"]
