"""Error taxonomy for the ranking core.

Callers branch on type, and on ``retryable`` when they only need to know
whether repeating the same call can succeed.
"""


class ShopSearchError(Exception):
    """Base exception for ranking core failures."""

    retryable = False


class ValidationError(ShopSearchError):
    """Malformed query, batch size or token input."""


class UpstreamSearchError(ShopSearchError):
    """A mandatory lexical or vector search provider failed."""

    retryable = True

    def __init__(self, message: str, source: str = "unknown"):
        super().__init__(message)
        self.source = source


class AIUnavailableError(ShopSearchError):
    """An AI capability failed or returned unusable output.

    Raised by AI adapters and always absorbed by the governor.
    """

    retryable = True


class TokenError(ShopSearchError):
    """Base class for continuation token rejections."""


class TokenExpiredError(TokenError):
    """The token outlived its ttl; restart pagination with a fresh search."""

    retryable = False


class TokenMalformedError(TokenError, ValidationError):
    """The token is not a structurally valid, untampered continuation cursor."""
