"""Moderation provider contract and the classifier-backed provider."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from typing import Any, Protocol

from pixguard.moderation.domain.screening import ScreeningConfig


@dataclass(frozen=True, slots=True)
class Verdict:
    """Structured outcome of a moderation check."""

    is_flagged: bool
    score: float
    provider: str

    def to_dict(self) -> dict[str, Any]:
        return {"is_flagged": self.is_flagged, "score": self.score, "provider": self.provider}


@dataclass(frozen=True, slots=True)
class ProviderOutcome:
    """What a provider call produced.

    ``unavailable`` marks failures where the provider could not be reached at
    all; the queue backs off on those. Other failures only cost an attempt.
    """

    success: bool
    is_flagged: bool = False
    score: float = 0.0
    provider: str = "unknown"
    error: str | None = None
    unavailable: bool = False

    @classmethod
    def ok(cls, verdict: Verdict) -> "ProviderOutcome":
        return cls(success=True, is_flagged=verdict.is_flagged, score=verdict.score, provider=verdict.provider)

    @classmethod
    def failure(cls, error: str, *, provider: str = "unknown", unavailable: bool = False) -> "ProviderOutcome":
        return cls(success=False, provider=provider, error=error, unavailable=unavailable)

    def verdict(self) -> Verdict:
        return Verdict(is_flagged=self.is_flagged, score=self.score, provider=self.provider)


class ModerationProvider(Protocol):
    """Classifies one stored image.

    Retries call this again with the same arguments, so implementations must
    be safe to repeat. They may raise ``ProviderUnavailable`` or
    ``ProviderRejected`` instead of returning a failed outcome.
    """

    async def moderate(self, subject_id: str, artifact_name: str, config: ScreeningConfig) -> ProviderOutcome:
        ...


class ArtifactStorage(Protocol):
    async def fetch(self, name: str) -> bytes:
        ...

    async def save(self, name: str, payload: bytes) -> None:
        ...


@dataclass(frozen=True)
class NsfwScore:
    """Probability scores returned by the NSFW classifier."""

    nsfw: float
    gore: float
    model_version: str | None = None


class NsfwClassifier(Protocol):
    async def score(self, payload: bytes, *, mime: str | None = None) -> NsfwScore:
        ...


class ZeroNsfwClassifier(NsfwClassifier):
    """Default stub that always returns a clean score."""

    async def score(self, payload: bytes, *, mime: str | None = None) -> NsfwScore:  # noqa: ARG002 - interface parity
        return NsfwScore(nsfw=0.0, gore=0.0, model_version="stub")


def guess_mime(artifact_name: str) -> str | None:
    mime, _ = mimetypes.guess_type(artifact_name)
    return mime


@dataclass
class ClassifierModerationProvider(ModerationProvider):
    """Runs a local classifier over the stored artifact."""

    storage: ArtifactStorage
    classifier: NsfwClassifier
    name: str = "local"

    async def moderate(self, subject_id: str, artifact_name: str, config: ScreeningConfig) -> ProviderOutcome:
        try:
            payload = await self.storage.fetch(artifact_name)
        except FileNotFoundError:
            return ProviderOutcome.failure(f"artifact {artifact_name} not found", provider=self.name)
        scores = await self.classifier.score(payload, mime=guess_mime(artifact_name))
        score = max(scores.nsfw, scores.gore)
        return ProviderOutcome.ok(Verdict(is_flagged=score >= config.flag_threshold, score=score, provider=self.name))


__all__ = [
    "ArtifactStorage",
    "ClassifierModerationProvider",
    "ModerationProvider",
    "NsfwClassifier",
    "NsfwScore",
    "ProviderOutcome",
    "Verdict",
    "ZeroNsfwClassifier",
    "guess_mime",
]
