"""Moderation package integration helpers exposed to the application."""

from pixguard.moderation.api import router
from pixguard.moderation.domain.container import configure, configure_postgres, get_processor, shutdown

__all__ = ["router", "configure", "configure_postgres", "get_processor", "shutdown"]
