"""
Error taxonomy for the discovery feed.

  InvalidInput         — bad page size, malformed cursor, wrong vector width.
                         Raised synchronously, surfaced to the caller as 400.
  UpstreamUnavailable  — Qdrant / TiDB / Redis unreachable or timed out.
                         Absorbed by the feed service (degrade or empty feed).
  ConfigurationError   — malformed weights or ranking constants.
                         Fatal at startup, never silently defaulted.
"""


class FeedError(Exception):
    """Base class for every error raised by the discovery service."""


class InvalidInput(FeedError):
    pass


class DimensionMismatch(InvalidInput):
    def __init__(self, expected: int, actual: object) -> None:
        super().__init__(f"expected {expected}-dimension vector, got {actual}")
        self.expected = expected
        self.actual = actual


class UpstreamUnavailable(FeedError):
    def __init__(self, upstream: str, reason: object = None) -> None:
        message = f"{upstream} unavailable"
        if reason is not None:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.upstream = upstream


class ConfigurationError(FeedError):
    pass
