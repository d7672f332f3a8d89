"""Runtime content screening configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Protocol

from pixguard.settings import Settings, settings


@dataclass(frozen=True, slots=True)
class ScreeningConfig:
    enabled: bool = False
    auto_blacklist: bool = False
    flag_threshold: float = 0.8
    provider_timeout_seconds: float = 30.0
    provider_options: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ScreeningConfig":
        source = source or settings
        return cls(
            enabled=source.content_screening_enabled,
            auto_blacklist=source.auto_blacklist_ip,
            flag_threshold=source.screening_flag_threshold,
            provider_timeout_seconds=source.screening_provider_timeout_seconds,
        )


class ScreeningConfigSource(Protocol):
    """Where the queue reads screening configuration from, once per task."""

    async def load(self) -> ScreeningConfig:
        ...


class StaticScreeningConfigSource(ScreeningConfigSource):
    """Holds one configuration in memory; ``update`` swaps it atomically."""

    def __init__(self, config: ScreeningConfig | None = None) -> None:
        self._config = config or ScreeningConfig.from_settings()

    async def load(self) -> ScreeningConfig:
        return self._config

    def update(self, **changes: Any) -> ScreeningConfig:
        self._config = replace(self._config, **changes)
        return self._config


__all__ = ["ScreeningConfig", "ScreeningConfigSource", "StaticScreeningConfigSource"]
