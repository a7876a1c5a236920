"""Per-request lifecycle: admission, fetch, sanitize, sandbox, analyze, shape.

``AnalysisPipeline.run`` drives one request through a strictly forward state
machine. Every phase gets its own timeout, clipped to what is left of the
request's overall budget. Whatever happens, including cancellation of the
calling task, the request's sandbox is torn down exactly once before ``run``
returns or raises.

Usage:
    pipeline = AnalysisPipeline(PipelineConfig.from_env())
    report = await pipeline.run("https://example.com")
    print(report.to_dict())
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from .config import PipelineConfig
from .document import AnalysisRequest, FetchedDocument
from .engine import RuleEngine
from .errors import ErrorKind, PipelineError
from .fetcher import fetch_document
from .governor import PressureLevel, ResourceGovernor, get_governor
from .report import BoundedReport
from .runner import AnalysisRunner
from .sandbox import Sandbox, SandboxManager
from .sanitizer import sanitize_html
from .shaper import shape_result

LOGGER = logging.getLogger(__name__)


class PipelineState(str, Enum):
    ADMITTED = "admitted"
    FETCHING = "fetching"
    SANITIZING = "sanitizing"
    SANDBOX_BUILDING = "sandbox_building"
    ANALYZING = "analyzing"
    SHAPING = "shaping"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


_FORWARD: List[PipelineState] = [
    PipelineState.ADMITTED,
    PipelineState.FETCHING,
    PipelineState.SANITIZING,
    PipelineState.SANDBOX_BUILDING,
    PipelineState.ANALYZING,
    PipelineState.SHAPING,
    PipelineState.COMPLETED,
]

_TERMINAL = frozenset({PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.REJECTED})

# Kind used when a phase fails with something other than a PipelineError.
_FALLBACK_KIND: Dict[PipelineState, ErrorKind] = {
    PipelineState.FETCHING: ErrorKind.NETWORK_ERROR,
    PipelineState.SANITIZING: ErrorKind.INVALID_CONTENT,
    PipelineState.SANDBOX_BUILDING: ErrorKind.SERVER_ERROR,
    PipelineState.ANALYZING: ErrorKind.ENGINE_ERROR,
    PipelineState.SHAPING: ErrorKind.RESULT_PROCESSING_ERROR,
}

_FALLBACK_MESSAGE: Dict[PipelineState, str] = {
    PipelineState.FETCHING: "Network error occurred",
    PipelineState.SANITIZING: "Received content could not be prepared for analysis",
    PipelineState.SANDBOX_BUILDING: "Sandbox initialization failed",
    PipelineState.ANALYZING: "Failed to execute accessibility analysis",
    PipelineState.SHAPING: "Failed to process analysis results",
}


@dataclass
class RequestLifecycle:
    """State trail of one request; terminal states are final."""

    url: str
    state: PipelineState = PipelineState.ADMITTED
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.ADMITTED])
    error_kind: Optional[ErrorKind] = None
    sandbox: Optional[Sandbox] = None

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL

    def advance(self, state: PipelineState) -> None:
        if self.finished or _FORWARD.index(state) != _FORWARD.index(self.state) + 1:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {state.value}")
        LOGGER.debug("%s: %s -> %s", self.url, self.state.value, state.value)
        self._enter(state)

    def reject(self, kind: ErrorKind) -> None:
        if self.state is not PipelineState.ADMITTED:
            raise RuntimeError(f"Cannot reject a request in state {self.state.value}")
        self.error_kind = kind
        self._enter(PipelineState.REJECTED)

    def fail(self, kind: Optional[ErrorKind]) -> None:
        if self.finished:
            return
        self.error_kind = kind
        self._enter(PipelineState.FAILED)

    def _enter(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)


def validate_url(url: Optional[str]) -> str:
    """Return the normalized absolute http(s) URL or raise a rejection error."""
    if not isinstance(url, str) or not url.strip():
        raise PipelineError(
            ErrorKind.INVALID_URL,
            "URL is required",
            phase=PipelineState.ADMITTED.value,
        )

    candidate = url.strip()
    parts = urlsplit(candidate)
    scheme = parts.scheme.lower()
    if scheme and scheme not in ("http", "https"):
        raise PipelineError(
            ErrorKind.INVALID_PROTOCOL,
            "Only HTTP and HTTPS URLs are supported",
            url=candidate,
            phase=PipelineState.ADMITTED.value,
        )
    try:
        port_ok = parts.port is None or parts.port > 0
    except ValueError:
        port_ok = False
    if not scheme or not parts.hostname or not port_ok:
        raise PipelineError(
            ErrorKind.INVALID_URL,
            "Invalid URL format",
            url=candidate,
            phase=PipelineState.ADMITTED.value,
        )

    return urlunsplit((scheme, parts.netloc, parts.path or "/", parts.query, parts.fragment))


FetchFunc = Callable[..., Awaitable[FetchedDocument]]


class AnalysisPipeline:
    """Runs requests end to end. Safe to share across concurrent requests."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        governor: Optional[ResourceGovernor] = None,
        sandbox_manager: Optional[SandboxManager] = None,
        runner: Optional[AnalysisRunner] = None,
        fetch: FetchFunc = fetch_document,
    ):
        self.config = config or PipelineConfig.from_env()
        self.governor = governor or get_governor()
        self._sandboxes = sandbox_manager or SandboxManager(
            headless=self.config.headless,
            reclaim=self.governor.reclaim,
            reclaim_delay=self.config.reclaim_delay,
        )
        self._runner = runner or AnalysisRunner(
            RuleEngine(
                script_path=self.config.engine_script,
                url=self.config.engine_url,
                cache_dir=self.config.cache_dir,
            )
        )
        self._fetch = fetch

    def admit(self, url: Optional[str]) -> AnalysisRequest:
        """Validate ``url`` and consult the governor; nothing expensive happens here."""
        normalized = validate_url(url)
        try:
            if not self.governor.running:
                # No background sampler (CLI, library use): take a reading now.
                self.governor.sample()
            self.governor.admit(normalized)
        except PipelineError:
            raise
        except Exception as exc:
            LOGGER.exception("Admission check failed for %s", normalized)
            raise self._unexpected(PipelineState.ADMITTED, exc, normalized) from exc
        return AnalysisRequest.create(
            normalized,
            budget=self.config.request_deadline,
            max_html_bytes=self.config.max_html_bytes,
            max_dom_elements=self.config.max_dom_elements,
        )

    async def run(
        self,
        url: Optional[str],
        *,
        lifecycle: Optional[RequestLifecycle] = None,
    ) -> BoundedReport:
        """Analyze ``url`` and return its bounded report.

        Raises:
            PipelineError: classified by kind and tagged with the failing phase.
        """
        lifecycle = lifecycle or RequestLifecycle(url=str(url or ""))
        started = time.monotonic()

        try:
            request = self.admit(url)
        except PipelineError as exc:
            lifecycle.reject(exc.kind)
            LOGGER.warning("Request rejected (%s): %s", exc.kind.value, exc.message)
            raise

        LOGGER.info("Starting accessibility check for: %s", request.url)
        try:
            report = await self._execute(request, lifecycle)
        except PipelineError as exc:
            if exc.phase is None:
                exc.phase = lifecycle.state.value
            if exc.url is None:
                exc.url = request.url
            lifecycle.fail(exc.kind)
            LOGGER.error("Accessibility check failed (%s): %s", exc.kind.value, exc.message)
            raise
        except asyncio.CancelledError:
            lifecycle.fail(None)
            LOGGER.warning("Accessibility check for %s cancelled", request.url)
            raise
        except Exception as exc:
            phase = lifecycle.state
            error = self._unexpected(phase, exc, request.url)
            lifecycle.fail(error.kind)
            LOGGER.exception("Unexpected failure in phase %s for %s", phase.value, request.url)
            raise error from exc
        finally:
            if lifecycle.sandbox is not None:
                await lifecycle.sandbox.teardown()

        report.elapsed_ms = int((time.monotonic() - started) * 1000)
        LOGGER.info(
            "Check completed in %dms: %d violations, %d incomplete",
            report.elapsed_ms,
            len(report.violations),
            len(report.incomplete),
        )
        return report

    async def _execute(self, request: AnalysisRequest, lifecycle: RequestLifecycle) -> BoundedReport:
        config = self.config

        lifecycle.advance(PipelineState.FETCHING)
        fetched = await self._fetch(
            request.url,
            timeout=request.clip(config.request_timeout),
            max_content_length=config.max_content_length,
            max_redirects=config.max_redirects,
            user_agent=config.user_agent,
            verify_tls=config.verify_tls,
        )

        lifecycle.advance(PipelineState.SANITIZING)
        sanitized = sanitize_html(fetched.text, request.max_html_bytes)

        lifecycle.advance(PipelineState.SANDBOX_BUILDING)
        sandbox = self._sandboxes.create(fetched.final_url or request.url)
        # Published before any await so a failure mid-construction still tears down.
        lifecycle.sandbox = sandbox
        element_count = await self._sandboxes.build(
            sandbox,
            sanitized,
            timeout=request.clip(config.sandbox_timeout),
            max_elements=request.max_dom_elements,
        )
        complex_site = element_count > config.complex_site_threshold
        reduced = complex_site or self.governor.level is not PressureLevel.NORMAL
        if complex_site:
            LOGGER.info("Complex website detected (%d elements) - using optimized settings", element_count)

        lifecycle.advance(PipelineState.ANALYZING)
        limits = config.limits_for(complex_site)
        analysis_timeout, poll_interval, max_attempts = config.analysis_budget(complex_site)
        raw = await self._runner.run(
            sandbox,
            timeout=request.clip(analysis_timeout),
            poll_interval=poll_interval,
            max_attempts=max_attempts,
            reduced=reduced,
            max_nodes=max(limits.max_violation_nodes, limits.max_incomplete_nodes),
        )
        # The sandbox is no longer needed once the raw result is in host memory.
        await sandbox.teardown()

        lifecycle.advance(PipelineState.SHAPING)
        report = shape_result(raw, limits, url=request.url)
        snapshot = self.governor.snapshot
        report.final_url = fetched.final_url
        report.complex_site = complex_site
        report.element_count = element_count
        report.html_truncated = sanitized.truncated
        report.html_bytes_before = sanitized.bytes_before
        report.html_bytes_after = sanitized.bytes_after
        report.memory_used_mb = snapshot.used_mb if snapshot else 0.0
        report.peak_memory_mb = self.governor.peak_mb
        report.timestamp = datetime.now(timezone.utc).isoformat()

        lifecycle.advance(PipelineState.COMPLETED)
        return report

    def _unexpected(self, state: PipelineState, exc: Exception, url: str) -> PipelineError:
        kind = _FALLBACK_KIND.get(state, ErrorKind.SERVER_ERROR)
        message = _FALLBACK_MESSAGE.get(state, "Internal server error during accessibility check")
        return PipelineError(
            kind,
            message,
            details=str(exc) if self.config.is_development else None,
            url=url,
            phase=state.value,
        )


async def run_pipeline(url: str, *, config: Optional[PipelineConfig] = None) -> BoundedReport:
    """Analyze ``url`` with a pipeline built from ``config`` (or the environment)."""
    return await AnalysisPipeline(config).run(url)
