"""Shared fakes and fixtures. No browser or network is used by the test suite."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from a11yscan.config import PipelineConfig
from a11yscan.document import FetchedDocument
from a11yscan.engine import RuleEngine
from a11yscan.governor import MemorySample, ResourceGovernor
from a11yscan.pipeline import AnalysisPipeline
from a11yscan.runner import AnalysisRunner, PROBE_SCRIPT, READ_ERROR_SCRIPT, READ_RESULT_SCRIPT
from a11yscan.sandbox import COUNT_ELEMENTS_SCRIPT, SandboxManager

_MB = 1024 * 1024

PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Example</title>
  <script>document.title = 'changed';</script>
  <link rel="stylesheet" href="/site.css">
</head>
<body>
  <main>
    <h1 onclick="track()">Welcome</h1>
    <img src="/logo.png">
    <iframe src="https://ads.example.net"></iframe>
  </main>
</body>
</html>
"""


def engine_payload(violations: int = 1, incomplete: int = 0, passes: int = 3) -> Dict[str, Any]:
    def finding(prefix: str, index: int) -> Dict[str, Any]:
        return {
            "id": f"{prefix}-{index}",
            "impact": "serious",
            "description": "Ensures images have alternate text",
            "help": "Images must have alternate text",
            "helpUrl": "https://dequeuniversity.com/rules/axe/4.10/image-alt",
            "tags": ["wcag2a", "wcag111"],
            "nodes": [
                {
                    "html": '<img src="/logo.png">',
                    "target": ["img"],
                    "failureSummary": "Fix any of the following: Element has no alt attribute",
                }
            ],
        }

    return {
        "violations": [finding("image-alt", i) for i in range(violations)],
        "incomplete": [finding("color-contrast", i) for i in range(incomplete)],
        "passes": passes,
        "url": "https://example.com/",
        "analysisTimeMs": 42,
    }


class FakeDriver:
    """In-memory stand-in for a browser page.

    ``outcome`` is what the sentinel probe eventually reports: "result",
    "error", or "pending" (never settles).
    """

    def __init__(
        self,
        *,
        element_count: int = 10,
        outcome: str = "result",
        resolve_after: int = 1,
        payload: Any = None,
        error_message: str = "Analysis failed: rule crashed",
        open_error: Optional[BaseException] = None,
        load_delay: float = 0.0,
        inject_error: Optional[BaseException] = None,
        inject_delay: float = 0.0,
        dispose_error: Optional[BaseException] = None,
    ):
        self.element_count = element_count
        self.outcome = outcome
        self.resolve_after = resolve_after
        self.payload = engine_payload() if payload is None else payload
        self.error_message = error_message
        self.open_error = open_error
        self.load_delay = load_delay
        self.inject_error = inject_error
        self.inject_delay = inject_delay
        self.dispose_error = dispose_error

        self.capabilities = None
        self.markup: Optional[str] = None
        self.url: Optional[str] = None
        self.injected: List[str] = []
        self.probes = 0
        self.dispose_calls = 0

    async def open(self, capabilities) -> None:
        self.capabilities = capabilities
        if self.open_error is not None:
            raise self.open_error

    async def load(self, markup: str, url: str) -> None:
        self.markup, self.url = markup, url
        if self.load_delay:
            await asyncio.sleep(self.load_delay)

    async def evaluate(self, expression: str) -> Any:
        if expression == COUNT_ELEMENTS_SCRIPT:
            return self.element_count
        if expression == PROBE_SCRIPT:
            self.probes += 1
            if self.outcome == "pending" or self.probes < self.resolve_after:
                return "pending"
            return self.outcome
        if expression == READ_RESULT_SCRIPT:
            return self.payload
        if expression == READ_ERROR_SCRIPT:
            return self.error_message

        self.injected.append(expression)
        if self.inject_delay:
            await asyncio.sleep(self.inject_delay)
        if self.inject_error is not None:
            raise self.inject_error
        return None

    async def dispose(self) -> None:
        self.dispose_calls += 1
        if self.dispose_error is not None:
            raise self.dispose_error


class FakeProbe:
    """Memory probe reporting whatever ``used_mb`` is set to."""

    def __init__(self, used_mb: float = 100.0, total_mb: float = 8192.0):
        self.used_mb = used_mb
        self.total_mb = total_mb
        self.calls = 0

    def __call__(self) -> MemorySample:
        self.calls += 1
        return MemorySample(used_bytes=int(self.used_mb * _MB), total_bytes=int(self.total_mb * _MB))


@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        request_timeout=2.0,
        sandbox_timeout=1.0,
        analysis_timeout=1.0,
        request_deadline=5.0,
        poll_interval=0.01,
        max_poll_attempts=500,
        complex_poll_interval=0.01,
        complex_max_poll_attempts=500,
        memory_sample_interval=0.01,
        reclaim_delay=0.0,
        cache_dir=tmp_path / "cache",
    )


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def governor(probe) -> ResourceGovernor:
    return ResourceGovernor(
        elevated_mb=300,
        critical_mb=450,
        interval=0.01,
        probe=probe,
        reclaim=MagicMock(),
    )


@pytest.fixture
def engine() -> RuleEngine:
    return RuleEngine(source="window.axe = window.axe || { run: () => Promise.resolve({}) };")


@pytest.fixture
def make_driver():
    return FakeDriver


@pytest.fixture
def html_fetch():
    """Build an AsyncMock fetch returning ``text`` for any URL."""

    def build(text: Optional[str] = PAGE_HTML, content_type: str = "text/html; charset=utf-8"):
        async def fetch(url: str, **kwargs) -> FetchedDocument:
            return FetchedDocument(
                request_url=url,
                final_url=url,
                status_code=200,
                text=text,
                content_type=content_type,
                byte_length=len((text or "").encode("utf-8")),
            )

        return AsyncMock(side_effect=fetch)

    return build


@pytest.fixture
def make_pipeline(config, governor, engine, html_fetch):
    """Build a pipeline around one FakeDriver; returns ``(pipeline, driver, driver_factory)``."""

    def build(driver: Optional[FakeDriver] = None, *, fetch=None, config_overrides=None):
        driver = driver or FakeDriver()
        cfg = config.with_overrides(**(config_overrides or {}))
        factory = MagicMock(return_value=driver)
        manager = SandboxManager(factory, reclaim=governor.reclaim, reclaim_delay=0.0)
        pipeline = AnalysisPipeline(
            cfg,
            governor=governor,
            sandbox_manager=manager,
            runner=AnalysisRunner(engine),
            fetch=fetch or html_fetch(),
        )
        return pipeline, driver, factory

    return build
