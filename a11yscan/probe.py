"""Lightweight reachability check: one HEAD request, no body, no analysis."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .config import DEFAULT_USER_AGENT
from .fetcher import classify_request_error

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ConnectivityResult:
    url: str
    status: int
    status_text: str
    content_length: Optional[str] = None
    content_type: Optional[str] = None
    server: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "url": self.url,
            "status": self.status,
            "statusText": self.status_text,
            "contentLength": self.content_length,
            "contentType": self.content_type,
            "server": self.server,
            "message": "Successfully connected to the URL",
        }


def _build_client(
    *,
    timeout: float,
    max_redirects: int,
    user_agent: str,
    verify_tls: bool,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        max_redirects=max_redirects,
        verify=verify_tls,
        headers={"User-Agent": user_agent, "Connection": "close"},
    )


async def probe_url(
    url: str,
    *,
    timeout: float = 10.0,
    max_redirects: int = 3,
    user_agent: str = DEFAULT_USER_AGENT,
    verify_tls: bool = True,
) -> ConnectivityResult:
    """HEAD ``url`` and report whatever status the server answers with.

    Any HTTP status counts as reachable; only transport failures raise
    ``PipelineError(NETWORK_ERROR)``.
    """
    LOGGER.info("Testing connectivity to: %s", url)
    try:
        async with _build_client(
            timeout=timeout,
            max_redirects=max_redirects,
            user_agent=user_agent,
            verify_tls=verify_tls,
        ) as client:
            response = await client.head(url)
    except httpx.RequestError as exc:
        LOGGER.error("Connectivity test failed for %s: %s", url, exc)
        raise classify_request_error(url, exc) from exc

    return ConnectivityResult(
        url=url,
        status=response.status_code,
        status_text=response.reason_phrase,
        content_length=response.headers.get("content-length"),
        content_type=response.headers.get("content-type"),
        server=response.headers.get("server"),
    )
