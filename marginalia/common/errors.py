"""
Error taxonomy for Marginalia pipelines.

Every stage failure is expressed as one of these types so callers can decide
between degrading and propagating without inspecting provider SDK exceptions.
"""

from typing import Optional

# Status codes worth retrying at the LLM client boundary
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class MarginaliaError(Exception):
    """Base class for all Marginalia errors."""


class ConfigurationError(MarginaliaError):
    """No usable model or provider could be resolved."""


class UpstreamError(MarginaliaError):
    """A language-model call failed (timeout, HTTP error, malformed response)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        if retryable is None:
            retryable = status_code is None or status_code in RETRYABLE_STATUS_CODES
        self.retryable = retryable

    def __repr__(self) -> str:
        return (
            f"UpstreamError({str(self)!r}, status_code={self.status_code}, "
            f"retryable={self.retryable})"
        )


class RetrievalError(MarginaliaError):
    """A vector or notes store could not be queried."""
