"""Error taxonomy for the analysis pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Machine-readable failure kinds returned to callers."""

    INVALID_URL = "INVALID_URL"
    INVALID_PROTOCOL = "INVALID_PROTOCOL"
    MEMORY_EXHAUSTED = "MEMORY_EXHAUSTED"
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    OVERSIZED_RESPONSE = "OVERSIZED_RESPONSE"
    INVALID_CONTENT = "INVALID_CONTENT"
    SANDBOX_TIMEOUT = "SANDBOX_TIMEOUT"
    TOO_COMPLEX = "TOO_COMPLEX"
    ANALYSIS_TIMEOUT = "ANALYSIS_TIMEOUT"
    POLL_EXHAUSTED = "POLL_EXHAUSTED"
    ENGINE_ERROR = "ENGINE_ERROR"
    RESULT_PROCESSING_ERROR = "RESULT_PROCESSING_ERROR"
    SERVER_ERROR = "SERVER_ERROR"


_HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_URL: 400,
    ErrorKind.INVALID_PROTOCOL: 400,
    ErrorKind.MEMORY_EXHAUSTED: 503,
    ErrorKind.HTTP_ERROR: 400,
    ErrorKind.INVALID_CONTENT: 422,
}

_SUGGESTIONS: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_URL: "Provide an absolute http:// or https:// URL.",
    ErrorKind.INVALID_PROTOCOL: "Only HTTP and HTTPS URLs can be analyzed.",
    ErrorKind.MEMORY_EXHAUSTED: "The service is under memory pressure. Retry in a few seconds.",
    ErrorKind.NETWORK_ERROR: "Check that the site is reachable and the URL is spelled correctly.",
    ErrorKind.HTTP_ERROR: "The site refused the request. Check that the page is publicly accessible.",
    ErrorKind.OVERSIZED_RESPONSE: "The page is too large to analyze. Try a more specific page.",
    ErrorKind.INVALID_CONTENT: "The URL did not return an HTML document.",
    ErrorKind.SANDBOX_TIMEOUT: "This website is too complex for analysis. Try a simpler page.",
    ErrorKind.TOO_COMPLEX: (
        "This website is too complex for analysis. Try analyzing a specific "
        "page instead of the homepage."
    ),
    ErrorKind.ANALYSIS_TIMEOUT: "Analysis timed out. Try a simpler page.",
    ErrorKind.POLL_EXHAUSTED: (
        "The rule engine stopped responding. Please try again or contact support."
    ),
    ErrorKind.ENGINE_ERROR: "Analysis failed. Please try again or contact support.",
    ErrorKind.RESULT_PROCESSING_ERROR: "Analysis results could not be processed. Please try again.",
    ErrorKind.SERVER_ERROR: "An unexpected error occurred. Please try again later.",
}


class PipelineError(Exception):
    """Raised when a request cannot produce a report.

    Every error carries the kind that classifies it and the pipeline phase
    that raised it. ``details`` holds a causal code (``ETIMEDOUT``, an HTTP
    status) or diagnostic text.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        details: Any = None,
        url: Optional[str] = None,
        suggestion: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        self.kind = kind
        self.message = message
        self.details = details
        self.url = url
        self.suggestion = suggestion or _SUGGESTIONS.get(kind)
        self.phase = phase
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.kind, 500)

    def to_dict(self) -> Dict[str, Any]:
        """Render the structured error object returned to callers."""
        payload: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.kind.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.details is not None:
            payload["details"] = self.details
        if self.url:
            payload["url"] = self.url
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload

    def __repr__(self) -> str:
        return f"PipelineError({self.kind.value}, {self.message!r}, phase={self.phase!r})"
