"""Local filesystem artifact storage."""

from __future__ import annotations

import asyncio
from pathlib import Path

from pixguard.moderation.domain.provider import ArtifactStorage


class LocalArtifactStorage(ArtifactStorage):
    """Keeps uploaded images as flat files under one directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        if not name or Path(name).name != name or name in {".", ".."}:
            raise ValueError(f"invalid artifact name: {name!r}")
        return self.root / name

    async def fetch(self, name: str) -> bytes:
        return await asyncio.to_thread(self._path(name).read_bytes)

    async def save(self, name: str, payload: bytes) -> None:
        path = self._path(name)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)

        await asyncio.to_thread(_write)


__all__ = ["LocalArtifactStorage"]
