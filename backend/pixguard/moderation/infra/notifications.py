"""Webhook delivery of moderation notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from pixguard.moderation.domain.provider import Verdict
from pixguard.moderation.domain.side_effects import NotificationSubject, Notifier

logger = logging.getLogger(__name__)


@dataclass
class WebhookNotifier(Notifier):
    """POSTs a JSON summary of each verdict to a webhook.

    Delivery errors propagate; the detached task sink logs and counts them.
    """

    http: httpx.AsyncClient
    url: str
    site_url: str = ""
    timeout: float = 10.0

    async def notify(self, subject: NotificationSubject, verdict: Verdict) -> None:
        payload = {
            "event": "image.moderated",
            "image": {
                "id": subject.id,
                "filename": subject.filename,
                "url": subject.public_url(self.site_url) or "",
            },
            "verdict": verdict.to_dict(),
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        response = await self.http.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.debug("moderation notification delivered", extra={"subject_id": subject.id})


__all__ = ["WebhookNotifier"]
