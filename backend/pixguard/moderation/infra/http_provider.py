"""Moderation provider that calls a remote classification endpoint over HTTP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from pixguard.errors import ProviderRejected, ProviderUnavailable
from pixguard.moderation.domain.provider import (
    ArtifactStorage,
    ModerationProvider,
    ProviderOutcome,
    Verdict,
    guess_mime,
)
from pixguard.moderation.domain.screening import ScreeningConfig

logger = logging.getLogger(__name__)


@dataclass
class HttpModerationProvider(ModerationProvider):
    """Uploads the stored image to ``endpoint`` and reads back a score.

    The endpoint answers with JSON carrying ``score`` (0..1) and optionally
    ``is_flagged``; without it the image is flagged when the score reaches the
    configured threshold. Timeouts, connection errors, 429 and 5xx responses
    raise ``ProviderUnavailable``. Any other 4xx raises ``ProviderRejected``.
    """

    http: httpx.AsyncClient
    storage: ArtifactStorage
    endpoint: str
    api_key: str | None = None
    name: str = "http"

    async def moderate(self, subject_id: str, artifact_name: str, config: ScreeningConfig) -> ProviderOutcome:
        try:
            payload = await self.storage.fetch(artifact_name)
        except FileNotFoundError:
            return ProviderOutcome.failure(f"artifact {artifact_name} not found", provider=self.name)

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        files = {"image": (artifact_name, payload, guess_mime(artifact_name) or "application/octet-stream")}
        data = {"subject_id": subject_id, **{key: str(value) for key, value in config.provider_options.items()}}
        try:
            response = await self.http.post(
                self.endpoint,
                headers=headers,
                files=files,
                data=data,
                timeout=config.provider_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"{self.name} timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"{self.name} unreachable: {exc.__class__.__name__}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(f"{self.name} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ProviderRejected(f"{self.name} rejected the image: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderRejected(f"{self.name} returned a non-JSON body") from exc
        if not isinstance(body, Mapping):
            raise ProviderRejected(f"{self.name} returned an unexpected body")
        verdict = self._verdict(body, config)
        logger.debug("provider verdict subject_id=%s score=%s", subject_id, verdict.score)
        return ProviderOutcome.ok(verdict)

    def _verdict(self, body: Mapping[str, Any], config: ScreeningConfig) -> Verdict:
        try:
            score = float(body.get("score", 0.0))
        except (TypeError, ValueError) as exc:
            raise ProviderRejected(f"{self.name} returned an invalid score") from exc
        flagged = body.get("is_flagged")
        if flagged is None:
            flagged = score >= config.flag_threshold
        return Verdict(is_flagged=bool(flagged), score=score, provider=str(body.get("provider") or self.name))


__all__ = ["HttpModerationProvider"]
