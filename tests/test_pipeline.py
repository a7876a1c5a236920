"""Tests for a11yscan.pipeline: the per-request lifecycle."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from a11yscan import fetcher
from a11yscan.errors import ErrorKind, PipelineError
from a11yscan.fetcher import fetch_document
from a11yscan.pipeline import PipelineState, RequestLifecycle, validate_url

from conftest import FakeDriver, engine_payload

_FORWARD = [
    PipelineState.ADMITTED,
    PipelineState.FETCHING,
    PipelineState.SANITIZING,
    PipelineState.SANDBOX_BUILDING,
    PipelineState.ANALYZING,
    PipelineState.SHAPING,
    PipelineState.COMPLETED,
]


class TestValidateUrl:
    def test_normalizes_http_url(self):
        assert validate_url("  https://Example.com  ") == "https://Example.com/"

    def test_keeps_path_and_query(self):
        assert validate_url("http://example.com/a/b?x=1") == "http://example.com/a/b?x=1"

    @pytest.mark.parametrize("url", [None, "", "   ", "example.com", "http://", "https://:80/"])
    def test_invalid_url(self, url):
        with pytest.raises(PipelineError) as info:
            validate_url(url)
        assert info.value.kind is ErrorKind.INVALID_URL
        assert info.value.http_status == 400

    @pytest.mark.parametrize("url", ["ftp://example.com/file", "javascript:alert(1)", "file:///etc/passwd"])
    def test_invalid_protocol(self, url):
        with pytest.raises(PipelineError) as info:
            validate_url(url)
        assert info.value.kind is ErrorKind.INVALID_PROTOCOL

    def test_bad_port(self):
        with pytest.raises(PipelineError) as info:
            validate_url("http://example.com:99999/")
        assert info.value.kind is ErrorKind.INVALID_URL


class TestRequestLifecycle:
    def test_forward_transitions(self):
        lifecycle = RequestLifecycle(url="https://example.com/")
        for state in _FORWARD[1:]:
            lifecycle.advance(state)
        assert lifecycle.history == _FORWARD
        assert lifecycle.finished

    def test_skipping_a_state_is_illegal(self):
        lifecycle = RequestLifecycle(url="https://example.com/")
        with pytest.raises(RuntimeError):
            lifecycle.advance(PipelineState.ANALYZING)

    def test_no_transition_out_of_terminal_state(self):
        lifecycle = RequestLifecycle(url="https://example.com/")
        lifecycle.advance(PipelineState.FETCHING)
        lifecycle.fail(ErrorKind.NETWORK_ERROR)
        with pytest.raises(RuntimeError):
            lifecycle.advance(PipelineState.SANITIZING)
        lifecycle.fail(ErrorKind.SERVER_ERROR)
        assert lifecycle.error_kind is ErrorKind.NETWORK_ERROR
        assert lifecycle.history[-1] is PipelineState.FAILED

    def test_reject_only_from_admitted(self):
        lifecycle = RequestLifecycle(url="https://example.com/")
        lifecycle.advance(PipelineState.FETCHING)
        with pytest.raises(RuntimeError):
            lifecycle.reject(ErrorKind.INVALID_URL)


class TestPipelineSuccess:
    @pytest.mark.asyncio
    async def test_happy_path(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(FakeDriver(element_count=120, resolve_after=3))
        lifecycle = RequestLifecycle(url="https://example.com")

        report = await pipeline.run("https://example.com", lifecycle=lifecycle)

        assert lifecycle.history == _FORWARD
        assert report.url == "https://example.com/"
        assert report.final_url == "https://example.com/"
        assert len(report.violations) == 1
        assert report.violations[0].id == "image-alt-0"
        assert report.pass_count == 3
        assert report.element_count == 120
        assert report.complex_site is False
        assert report.results_truncated is False
        assert report.html_truncated is False
        assert report.html_bytes_after < report.html_bytes_before
        assert report.memory_used_mb == pytest.approx(100.0)
        assert report.timestamp
        assert driver.dispose_calls == 1

    @pytest.mark.asyncio
    async def test_sandbox_receives_sanitized_markup(self, make_pipeline):
        pipeline, driver, _ = make_pipeline()
        await pipeline.run("https://example.com/")

        assert "<script" not in driver.markup
        assert "<iframe" not in driver.markup
        assert "onclick" not in driver.markup
        assert "<link" not in driver.markup
        assert '<meta charset="utf-8">' in driver.markup
        assert driver.url == "https://example.com/"

    @pytest.mark.asyncio
    async def test_full_rule_set_for_simple_page(self, make_pipeline):
        pipeline, driver, _ = make_pipeline()
        await pipeline.run("https://example.com/")

        script = driver.injected[0]
        assert '"focus-order-semantics": {"enabled": false}' in script
        assert '"color-contrast": {"enabled": false}' not in script

    @pytest.mark.asyncio
    async def test_complex_site_uses_reduced_rules_and_tighter_caps(self, make_pipeline):
        driver = FakeDriver(element_count=2500, payload=engine_payload(violations=40))
        pipeline, driver, _ = make_pipeline(driver)

        report = await pipeline.run("https://example.com/")

        assert report.complex_site is True
        assert len(report.violations) == 25
        assert report.results_truncated is True
        assert '"color-contrast": {"enabled": false}' in driver.injected[0]

    @pytest.mark.asyncio
    async def test_memory_pressure_reduces_rule_set(self, make_pipeline, probe):
        probe.used_mb = 350.0
        pipeline, driver, _ = make_pipeline()

        report = await pipeline.run("https://example.com/")

        assert report.complex_site is False
        assert '"color-contrast": {"enabled": false}' in driver.injected[0]

    @pytest.mark.asyncio
    async def test_oversized_html_is_truncated(self, make_pipeline, html_fetch):
        big = "<html><body><main>" + "<p>lorem ipsum</p>" * 500 + "</main></body></html>"
        pipeline, driver, _ = make_pipeline(
            fetch=html_fetch(big), config_overrides={"max_html_bytes": 1000}
        )

        report = await pipeline.run("https://example.com/")

        assert report.html_truncated is True
        assert len(driver.markup.encode("utf-8")) <= 1000


class TestPipelineRejection:
    @pytest.mark.asyncio
    async def test_critical_memory_rejects_before_fetch(self, make_pipeline, probe):
        probe.used_mb = 500.0
        fetch = AsyncMock()
        pipeline, _, factory = make_pipeline(fetch=fetch)
        lifecycle = RequestLifecycle(url="https://example.com/")

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/", lifecycle=lifecycle)

        assert info.value.kind is ErrorKind.MEMORY_EXHAUSTED
        assert info.value.http_status == 503
        assert lifecycle.state is PipelineState.REJECTED
        fetch.assert_not_called()
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_protocol_rejected(self, make_pipeline):
        fetch = AsyncMock()
        pipeline, _, _ = make_pipeline(fetch=fetch)
        lifecycle = RequestLifecycle(url="ftp://example.com")

        with pytest.raises(PipelineError) as info:
            await pipeline.run("ftp://example.com", lifecycle=lifecycle)

        assert info.value.kind is ErrorKind.INVALID_PROTOCOL
        assert lifecycle.history == [PipelineState.ADMITTED, PipelineState.REJECTED]
        fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_memory_reading_failure_is_server_error(self, make_pipeline, governor):
        governor._probe = MagicMock(side_effect=RuntimeError("memory reading unavailable"))
        fetch = AsyncMock()
        pipeline, _, factory = make_pipeline(fetch=fetch)
        lifecycle = RequestLifecycle(url="https://example.com/")

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/", lifecycle=lifecycle)

        assert info.value.kind is ErrorKind.SERVER_ERROR
        assert info.value.http_status == 500
        assert info.value.phase == "admitted"
        assert info.value.url == "https://example.com/"
        assert info.value.details is None
        assert isinstance(info.value.__cause__, RuntimeError)
        assert lifecycle.state is PipelineState.REJECTED
        fetch.assert_not_called()
        factory.assert_not_called()


class TestPipelineFailures:
    @pytest.mark.asyncio
    async def test_fetch_timeout_creates_no_sandbox(self, make_pipeline, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        def build_client(*, timeout, max_redirects, user_agent, verify_tls):
            return httpx.AsyncClient(transport=httpx.MockTransport(handler))

        monkeypatch.setattr(fetcher, "_build_client", build_client)
        pipeline, driver, factory = make_pipeline(fetch=fetch_document)

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://slow.example.com/")

        assert info.value.kind is ErrorKind.NETWORK_ERROR
        assert info.value.details == "ETIMEDOUT"
        assert info.value.http_status == 500
        assert info.value.phase == "fetching"
        factory.assert_not_called()
        assert driver.dispose_calls == 0

    @pytest.mark.asyncio
    async def test_non_html_body_is_invalid_content(self, make_pipeline, html_fetch):
        pipeline, _, factory = make_pipeline(fetch=html_fetch(None, "image/png"))

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/logo.png")

        assert info.value.kind is ErrorKind.INVALID_CONTENT
        assert info.value.http_status == 422
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_too_complex_skips_analysis(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(
            FakeDriver(element_count=4000), config_overrides={"max_dom_elements": 3000}
        )

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/")

        assert info.value.kind is ErrorKind.TOO_COMPLEX
        assert info.value.details == {"elementCount": 4000, "maxElements": 3000}
        assert driver.injected == []
        assert driver.dispose_calls == 1

    @pytest.mark.asyncio
    async def test_sandbox_timeout_releases_partial_sandbox(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(
            FakeDriver(load_delay=1.0), config_overrides={"sandbox_timeout": 0.05}
        )

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/")

        assert info.value.kind is ErrorKind.SANDBOX_TIMEOUT
        assert driver.dispose_calls == 1

    @pytest.mark.asyncio
    async def test_result_never_arrives(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(
            FakeDriver(outcome="pending"), config_overrides={"analysis_timeout": 0.1}
        )
        lifecycle = RequestLifecycle(url="https://example.com/")

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/", lifecycle=lifecycle)

        assert info.value.kind is ErrorKind.ANALYSIS_TIMEOUT
        assert info.value.phase == "analyzing"
        assert lifecycle.state is PipelineState.FAILED
        assert lifecycle.error_kind is ErrorKind.ANALYSIS_TIMEOUT
        assert driver.dispose_calls == 1

    @pytest.mark.asyncio
    async def test_overall_deadline_clips_analysis(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(
            FakeDriver(outcome="pending"),
            config_overrides={"analysis_timeout": 30.0, "request_deadline": 0.2},
        )

        with pytest.raises(PipelineError) as info:
            await asyncio.wait_for(pipeline.run("https://example.com/"), timeout=5)

        assert info.value.kind is ErrorKind.ANALYSIS_TIMEOUT
        assert driver.dispose_calls == 1

    @pytest.mark.asyncio
    async def test_engine_error_sentinel(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(FakeDriver(outcome="error"))

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/")

        assert info.value.kind is ErrorKind.ENGINE_ERROR
        assert info.value.details == "Analysis failed: rule crashed"
        assert driver.dispose_calls == 1

    @pytest.mark.asyncio
    async def test_unexpected_sandbox_failure_is_server_error(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(FakeDriver(open_error=RuntimeError("no browser")))

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/")

        assert info.value.kind is ErrorKind.SERVER_ERROR
        assert info.value.phase == "sandbox_building"
        assert info.value.details is None
        assert driver.dispose_calls == 1

    @pytest.mark.asyncio
    async def test_development_mode_exposes_exception_text(self, make_pipeline):
        pipeline, _, _ = make_pipeline(
            FakeDriver(open_error=RuntimeError("no browser")),
            config_overrides={"environment": "development"},
        )

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/")

        assert info.value.details == "no browser"

    @pytest.mark.asyncio
    async def test_unexpected_fetch_failure_stays_in_fetch_phase(self, make_pipeline):
        fetch = AsyncMock(side_effect=ValueError("bad header"))
        pipeline, _, factory = make_pipeline(fetch=fetch)

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/")

        assert info.value.kind is ErrorKind.NETWORK_ERROR
        assert info.value.phase == "fetching"
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_shaping_failure(self, make_pipeline):
        payload = engine_payload()
        payload["violations"].append(42)
        pipeline, driver, _ = make_pipeline(FakeDriver(payload=payload))

        with pytest.raises(PipelineError) as info:
            await pipeline.run("https://example.com/")

        assert info.value.kind is ErrorKind.RESULT_PROCESSING_ERROR
        assert info.value.phase == "shaping"
        assert driver.dispose_calls == 1

    @pytest.mark.asyncio
    async def test_dispose_failure_does_not_mask_result(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(FakeDriver(dispose_error=RuntimeError("already closed")))

        report = await pipeline.run("https://example.com/")

        assert len(report.violations) == 1
        assert driver.dispose_calls == 1


class TestPipelineCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_caller_tears_down(self, make_pipeline):
        pipeline, driver, _ = make_pipeline(FakeDriver(outcome="pending"))
        lifecycle = RequestLifecycle(url="https://example.com/")

        task = asyncio.ensure_future(pipeline.run("https://example.com/", lifecycle=lifecycle))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert driver.dispose_calls == 1
        assert lifecycle.state is PipelineState.FAILED
