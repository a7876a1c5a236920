"""Governed retrieval of the target document over httpx.

One client per fetch, keep-alive disabled: nothing is pooled or reused across
requests. No retries are attempted here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import httpx

from .document import FetchedDocument
from .errors import ErrorKind, PipelineError

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

_BINARY_PREFIXES = ("image/", "audio/", "video/", "font/")
_BINARY_TYPES = frozenset(
    {
        "application/octet-stream",
        "application/pdf",
        "application/zip",
        "application/gzip",
    }
)


def _build_client(
    *,
    timeout: float,
    max_redirects: int,
    user_agent: str,
    verify_tls: bool,
) -> httpx.AsyncClient:
    """Create a single-use client for one fetch."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=True,
        max_redirects=max_redirects,
        verify=verify_tls,
        limits=httpx.Limits(max_connections=1, max_keepalive_connections=0),
        headers={
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml",
            "Accept-Language": "en-US,en;q=0.9",
            "Cache-Control": "no-cache",
            "Connection": "close",
        },
    )


async def fetch_document(
    url: str,
    *,
    timeout: float,
    max_content_length: int,
    max_redirects: int,
    user_agent: str,
    verify_tls: bool = True,
) -> FetchedDocument:
    """Fetch ``url`` and return its body as text.

    Raises:
        PipelineError: ``HTTP_ERROR`` for a final status outside 2xx/3xx,
            ``NETWORK_ERROR`` for DNS, connection, redirect and timeout
            failures, ``OVERSIZED_RESPONSE`` when the body exceeds
            ``max_content_length``.
    """
    if timeout <= 0:
        raise _network_error(url, "ETIMEDOUT")

    try:
        return await asyncio.wait_for(
            _fetch(
                url,
                timeout=timeout,
                max_content_length=max_content_length,
                max_redirects=max_redirects,
                user_agent=user_agent,
                verify_tls=verify_tls,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        raise _network_error(url, "ETIMEDOUT") from exc
    except httpx.RequestError as exc:
        raise classify_request_error(url, exc) from exc


def classify_request_error(url: str, exc: httpx.RequestError) -> PipelineError:
    """Map an httpx transport failure to ``NETWORK_ERROR`` with a causal code."""
    if isinstance(exc, httpx.TimeoutException):
        return _network_error(url, "ETIMEDOUT")
    if isinstance(exc, httpx.TooManyRedirects):
        return _network_error(url, "ERR_TOO_MANY_REDIRECTS")
    if isinstance(exc, httpx.ConnectError):
        return _network_error(url, _connect_error_code(exc))
    LOGGER.debug("Request error for %s: %r", url, exc)
    return _network_error(url, type(exc).__name__.upper())


async def _fetch(
    url: str,
    *,
    timeout: float,
    max_content_length: int,
    max_redirects: int,
    user_agent: str,
    verify_tls: bool,
) -> FetchedDocument:
    async with _build_client(
        timeout=timeout,
        max_redirects=max_redirects,
        user_agent=user_agent,
        verify_tls=verify_tls,
    ) as client:
        async with client.stream("GET", url) as response:
            status = response.status_code
            if not 200 <= status < 400:
                reason = response.reason_phrase or ""
                raise PipelineError(
                    ErrorKind.HTTP_ERROR,
                    f"Server responded with {status}: {reason}".rstrip(": "),
                    details=status,
                    url=url,
                    phase="fetching",
                )

            declared = _declared_length(response.headers)
            if declared is not None and declared > max_content_length:
                raise _oversized(url, max_content_length, declared)

            chunks = []
            received = 0
            async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                received += len(chunk)
                if received > max_content_length:
                    raise _oversized(url, max_content_length, received)
                chunks.append(chunk)

            body = b"".join(chunks)
            content_type = response.headers.get("content-type", "")
            text: Optional[str] = None
            if _is_textual(content_type):
                text = body.decode(response.encoding or "utf-8", errors="replace")

            LOGGER.info(
                "Fetched %s (%d, %d bytes, %s)",
                response.url,
                status,
                received,
                content_type or "no content-type",
            )
            return FetchedDocument(
                request_url=url,
                final_url=str(response.url),
                status_code=status,
                text=text,
                content_type=content_type,
                declared_length=declared,
                byte_length=received,
                headers=dict(response.headers),
            )


def _declared_length(headers: httpx.Headers) -> Optional[int]:
    value = headers.get("content-length")
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _is_textual(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    if not media_type:
        return True
    if media_type.startswith(_BINARY_PREFIXES):
        return False
    return media_type not in _BINARY_TYPES


def _connect_error_code(exc: httpx.ConnectError) -> str:
    message = str(exc).lower()
    if "name or service not known" in message or "nodename nor servname" in message:
        return "ENOTFOUND"
    if "getaddrinfo" in message or "name resolution" in message:
        return "ENOTFOUND"
    if "refused" in message:
        return "ECONNREFUSED"
    return "ECONNECT"


def _network_error(url: str, code: str) -> PipelineError:
    messages: Dict[str, str] = {
        "ETIMEDOUT": "Request timed out - website may be too slow or complex",
        "ENOTFOUND": "Domain not found - check URL spelling",
        "ECONNREFUSED": "Connection refused by the remote server",
        "ERR_TOO_MANY_REDIRECTS": "Too many redirects",
    }
    return PipelineError(
        ErrorKind.NETWORK_ERROR,
        messages.get(code, "Network error occurred"),
        details=code,
        url=url,
        phase="fetching",
    )


def _oversized(url: str, limit: int, size: int) -> PipelineError:
    return PipelineError(
        ErrorKind.OVERSIZED_RESPONSE,
        f"Response body exceeds {limit} bytes",
        details=size,
        url=url,
        phase="fetching",
    )
