from __future__ import annotations

from typing import Optional


class CrawlError(Exception):
    """Base class for everything the crawl engine raises on purpose."""


class FetchFailure(CrawlError):
    """
    A single fetch did not produce usable data. Subclasses are retried by the
    retry coordinator and end up in the failure report when retries run out.
    """
    kind = "fetch"

    def __init__(self, message: str, *, key: object = None) -> None:
        super().__init__(message)
        self.key = key


class FetchTimeout(FetchFailure):
    kind = "timeout"


class ZeroResultError(FetchFailure):
    """The fetch succeeded but the page held no records."""
    kind = "zero_result"


class TransportError(FetchFailure):
    """The underlying fetch raised (network, HTTP status, parser crash)."""
    kind = "transport"

    def __init__(self, message: str, *, key: object = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, key=key)
        self.cause = cause


class CrawlCancelled(CrawlError):
    """Raised inside a deadline race when the run-scoped cancel token fires."""


class CrawlAlreadyRunning(CrawlError):
    """A start request arrived while another run was active."""


class ConfigError(ValueError):
    """Invalid configuration value."""
