"""Error taxonomy for the recommendation core."""


class RecommenderError(Exception):
    """Base class for all errors raised by media_rec."""


class ConfigurationError(RecommenderError):
    """Required configuration (e.g. the provider access token) is missing."""


class CallerError(RecommenderError, ValueError):
    """Malformed input from the caller. Never retried."""


class UpstreamError(RecommenderError):
    """Non-success provider response or network fault."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"HTTP {self.status}: {self.message}"


# What TMDBClient.fetch raises for non-success responses and network faults
FetchError = UpstreamError


class RateLimitedError(UpstreamError):
    """The provider kept rate limiting past the allowed total wait."""

    def __init__(self, message: str, waited: float = 0.0):
        super().__init__(message, status=429)
        self.waited = waited


class NoSeedsResolvedError(RecommenderError):
    """None of the seeds given to an aggregation could be resolved."""

    def __init__(self, seeds, reasons: dict | None = None):
        self.seeds = list(seeds)
        self.reasons = reasons or {}
        listed = ", ".join(str(s) for s in self.seeds) or "<none>"
        super().__init__(f"Could not resolve any seed: {listed}")


class CacheError(RecommenderError):
    """Cache backend failure. The cache layer always degrades these to a miss/no-op."""
