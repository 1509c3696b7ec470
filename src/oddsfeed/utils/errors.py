from __future__ import annotations


class FeedError(Exception):
    """Base class for everything the feed raises on purpose."""


class TransportError(FeedError):
    """Push connection failed to open or closed underneath us. Retried via reconnect."""


class FetchError(FeedError):
    """A history/quote pull failed. Retried on the next poll tick; series left untouched."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class ResolveError(FetchError):
    """Slug/market resolution failed; message is shown to the caller as-is."""


class MalformedMessage(FeedError):
    """Inbound frame could not be parsed or did not match the expected shape."""


class ConfigurationError(FeedError):
    """No instrument key available to subscribe. Surfaced once, never retried."""
