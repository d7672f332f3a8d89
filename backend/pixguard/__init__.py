"""Upload admission and asynchronous image moderation backend."""

__version__ = "0.1.0"
