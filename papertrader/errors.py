"""Exception hierarchy for the signal pipeline."""


class PipelineError(Exception):
    """Base exception for pipeline errors."""
    pass


class UpstreamUnavailableError(PipelineError):
    """An external service could not serve the request (auth, quota, timeout, HTTP error)."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class FeedUnavailableError(UpstreamUnavailableError):
    """The primary content feed rejected us (401/403/429). Treated as temporary."""
    pass


class CompletionError(UpstreamUnavailableError):
    """The AI completion service failed or returned an unusable envelope."""
    pass


class PartialAnalysisError(CompletionError):
    """AI analysis stopped early on resource exhaustion; ``analyses`` holds what completed."""

    def __init__(self, message: str, status_code: int = None, analyses=None):
        super().__init__(message, status_code)
        self.analyses = list(analyses or [])


class QuoteUnavailableError(UpstreamUnavailableError):
    """The quote service failed outright (as opposed to returning no quote)."""
    pass


def is_resource_exhausted(exc: BaseException) -> bool:
    """True for quota/rate failures that warrant backing off before the next run."""
    if isinstance(exc, UpstreamUnavailableError) and exc.status_code == 429:
        return True
    message = str(exc).lower()
    return "resource_exhausted" in message or "resource exhausted" in message or "rate limit" in message
