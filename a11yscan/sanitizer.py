"""Bound and clean fetched markup before it reaches the sandbox.

The transform is pure and deterministic:

- the markup is parsed with BeautifulSoup (``html.parser``) and scripts,
  styles, frames, embedded media, comments, ``<link>`` tags and non-essential
  ``<meta>`` tags are removed, as are inline ``style`` and ``on*`` attributes;
- markup above the byte ceiling is cut and closed with ``TRUNCATION_SUFFIX``.
  The ceiling is checked again after serialisation, which can add closing tags
  and escapes.

Sanitizing sanitized output returns it unchanged.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from bs4 import BeautifulSoup, Comment, Tag
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter

from .config import TRUNCATION_SUFFIX
from .document import SanitizedDocument
from .errors import ErrorKind, PipelineError

LOGGER = logging.getLogger(__name__)

_SUFFIX_BYTES = len(TRUNCATION_SUFFIX.encode("utf-8"))

REMOVED_TAGS = (
    "script",
    "style",
    "iframe",
    "frame",
    "frameset",
    "object",
    "embed",
    "video",
    "audio",
    "canvas",
    "link",
)

# Names that serialise back to a well-formed tag or attribute.
_TAG_NAME = re.compile(r"^[a-z][a-z0-9:_.-]*$")
_ATTR_NAME = re.compile(r"^[a-z_:][a-z0-9:_.-]*$")

# Minimal escaping, void elements written as ``<br>``: output parses back to itself.
_FORMATTER = HTMLFormatter(
    entity_substitution=EntitySubstitution.substitute_xml,
    void_element_close_prefix=None,
)


def sanitize_html(raw: Any, max_bytes: int) -> SanitizedDocument:
    """Strip high-risk markup from ``raw`` and bound it to ``max_bytes``.

    Raises:
        PipelineError: ``INVALID_CONTENT`` when ``raw`` is missing, not a
            string, or blank.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise PipelineError(
            ErrorKind.INVALID_CONTENT,
            "No valid HTML content received",
            phase="sanitizing",
        )

    bytes_before = len(raw.encode("utf-8"))
    budget = max_bytes - _SUFFIX_BYTES
    truncated = bytes_before > max_bytes
    # Cut before parsing so the parser never sees more than the ceiling.
    html = _cut(raw, budget) if truncated else raw

    # A trailing closing sequence is set aside and re-applied after stripping.
    closed = html.endswith(TRUNCATION_SUFFIX)
    if closed:
        html = html[: -len(TRUNCATION_SUFFIX)]

    cleaned = strip_markup(html)
    needs_suffix = (truncated or closed) and not cleaned.endswith(TRUNCATION_SUFFIX)
    limit = budget if needs_suffix else max_bytes
    if _size(cleaned) > limit:
        truncated = True
        cleaned = _shrink(cleaned, budget)
    if (truncated or closed) and not cleaned.endswith(TRUNCATION_SUFFIX):
        cleaned += TRUNCATION_SUFFIX

    if truncated:
        LOGGER.warning(
            "Large HTML detected (%.2fMB), truncated to %d bytes",
            bytes_before / (1024 * 1024),
            max_bytes,
        )
    bytes_after = _size(cleaned)
    LOGGER.debug("Sanitized HTML: %d -> %d bytes", bytes_before, bytes_after)

    return SanitizedDocument(
        html=cleaned,
        truncated=truncated,
        bytes_before=bytes_before,
        bytes_after=bytes_after,
    )


def strip_markup(html: str) -> str:
    """Parse ``html``, drop every stripped construct and serialise the rest."""
    soup = BeautifulSoup(html, "html.parser")

    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for tag in soup.find_all(REMOVED_TAGS):
        if not tag.decomposed:
            tag.decompose()

    for tag in soup.find_all("meta"):
        if not _is_essential_meta(tag):
            tag.decompose()

    for tag in soup.find_all(True):
        if not _TAG_NAME.match(tag.name):
            tag.unwrap()
            continue
        for name in list(tag.attrs):
            lowered = name.lower()
            if lowered.startswith("on") or lowered == "style" or not _ATTR_NAME.match(lowered):
                del tag.attrs[name]

    return soup.decode(formatter=_FORMATTER)


def _is_essential_meta(tag: Tag) -> bool:
    # Meta tags that accessibility rules inspect (meta-viewport, meta-refresh).
    if "charset" in tag.attrs:
        return True
    name = str(tag.get("name") or "").strip().lower()
    http_equiv = str(tag.get("http-equiv") or "").strip().lower()
    return name == "viewport" or http_equiv == "refresh"


def _size(text: str) -> int:
    return len(text.encode("utf-8"))


def _cut(text: str, max_bytes: int) -> str:
    """Cut ``text`` to ``max_bytes`` on a character boundary, dropping a half tag."""
    if max_bytes <= 0:
        return ""
    head = text.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")
    last_open = head.rfind("<")
    if last_open > head.rfind(">"):
        head = head[:last_open]
    return head


def _shrink(html: str, limit: int) -> str:
    """Largest stripped prefix of ``html`` whose serialisation fits ``limit``."""
    keep = limit
    while True:
        candidate = strip_markup(_cut(html, keep))
        overshoot = _size(candidate) - limit
        if overshoot <= 0:
            return candidate
        keep -= overshoot
