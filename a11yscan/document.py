"""Data structures passed between the request-side pipeline phases."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(frozen=True, slots=True)
class AnalysisRequest:
    """One admitted analysis request.

    ``deadline`` is a ``time.monotonic()`` timestamp bounding the whole
    fetch + sandbox build + analysis spend.
    """

    url: str
    deadline: float
    max_html_bytes: int
    max_dom_elements: int

    @classmethod
    def create(
        cls,
        url: str,
        *,
        budget: float,
        max_html_bytes: int,
        max_dom_elements: int,
    ) -> "AnalysisRequest":
        return cls(
            url=url,
            deadline=time.monotonic() + budget,
            max_html_bytes=max_html_bytes,
            max_dom_elements=max_dom_elements,
        )

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def clip(self, timeout: float) -> float:
        """Clip a phase timeout to the remaining request budget."""
        return min(timeout, self.remaining())


@dataclass(slots=True)
class FetchedDocument:
    """Raw fetch output. ``text`` is None when the body is not textual."""

    request_url: str
    final_url: str
    status_code: int
    text: Optional[str]
    content_type: str = ""
    declared_length: Optional[int] = None
    byte_length: int = 0
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SanitizedDocument:
    """Markup cleaned and bounded for the sandbox."""

    html: str
    truncated: bool
    bytes_before: int
    bytes_after: int
