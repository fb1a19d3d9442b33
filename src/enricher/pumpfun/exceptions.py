class PumpfunError(Exception):
    pass


class UpstreamError(PumpfunError):
    """Non-success response, timeout or connection failure from pump.fun."""

    def __init__(self, message: str, *, status: int | None = None, excerpt: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.excerpt = excerpt


class RateLimitError(UpstreamError):
    """Throttled on every attempt up to the retry ceiling."""


class MalformedResponseError(UpstreamError):
    """Body was not valid JSON (typically an anti-bot challenge page)."""
