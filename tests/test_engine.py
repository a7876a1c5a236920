"""Tests for a11yscan.engine: engine source loading and runner scripts."""

from __future__ import annotations

import json

import httpx
import pytest

from a11yscan import engine as engine_module
from a11yscan.config import GUIDELINE_TAGS
from a11yscan.engine import ERROR_SENTINEL, RESULT_SENTINEL, RuleEngine, build_run_options
from a11yscan.errors import ErrorKind, PipelineError
from a11yscan.sandbox import ENGINE_TIMERS_HOOK

AXE_STUB = "/* axe v4.10.2 */ window.axe = { run: () => Promise.resolve({}) };"


def _mock_downloads(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def build(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(engine_module.httpx, "AsyncClient", build)


class TestBuildRunOptions:
    def test_full_rule_set(self):
        options = build_run_options(reduced=False)
        assert options["runOnly"] == {"type": "tag", "values": GUIDELINE_TAGS}
        assert options["resultTypes"] == ["violations", "incomplete"]
        assert options["rules"] == {"focus-order-semantics": {"enabled": False}}

    def test_reduced_rule_set(self):
        rules = build_run_options(reduced=True)["rules"]
        assert set(rules) == {
            "color-contrast",
            "focus-order-semantics",
            "scrollable-region-focusable",
            "css-orientation-lock",
        }
        assert all(rule == {"enabled": False} for rule in rules.values())

    def test_both_guideline_levels_always_selected(self):
        assert build_run_options(reduced=True)["runOnly"]["values"] == ["wcag2a", "wcag2aa"]


class TestRuleEngineScript:
    @pytest.mark.asyncio
    async def test_script_embeds_source_and_sentinels(self):
        script = await RuleEngine(source=AXE_STUB).build_script(reduced=False, max_nodes=5)

        assert AXE_STUB in script
        assert RESULT_SENTINEL in script
        assert ERROR_SENTINEL in script
        assert ENGINE_TIMERS_HOOK in script
        assert "const maxNodes = 5;" in script
        assert json.dumps(build_run_options(reduced=False)) in script
        assert script.startswith("(() => {")
        assert script.endswith("})()")

    @pytest.mark.asyncio
    async def test_source_with_format_characters_survives(self):
        source = "var ratio = 10 % 3; var tpl = '%(result)s {x}';"
        script = await RuleEngine(source=source).build_script(reduced=True, max_nodes=3)
        assert source in script

    @pytest.mark.asyncio
    async def test_max_nodes_is_at_least_one(self):
        script = await RuleEngine(source=AXE_STUB).build_script(reduced=False, max_nodes=0)
        assert "const maxNodes = 1;" in script


class TestRuleEngineSource:
    @pytest.mark.asyncio
    async def test_reads_configured_script(self, tmp_path):
        path = tmp_path / "axe.min.js"
        path.write_text(AXE_STUB, encoding="utf-8")

        assert await RuleEngine(script_path=str(path)).source() == AXE_STUB

    @pytest.mark.asyncio
    async def test_missing_script_is_engine_error(self, tmp_path):
        engine = RuleEngine(script_path=str(tmp_path / "nope.js"))
        with pytest.raises(PipelineError) as info:
            await engine.source()
        assert info.value.kind is ErrorKind.ENGINE_ERROR
        assert info.value.details == "FileNotFoundError"

    @pytest.mark.asyncio
    async def test_uses_disk_cache(self, tmp_path, monkeypatch):
        def handler(request):
            raise AssertionError("should not download")

        _mock_downloads(monkeypatch, handler)
        engine = RuleEngine(url="https://cdn.example.com/axe.min.js", cache_dir=tmp_path)
        engine.cache_path.write_text(AXE_STUB, encoding="utf-8")

        assert await engine.source() == AXE_STUB

    @pytest.mark.asyncio
    async def test_downloads_once_and_caches(self, tmp_path, monkeypatch):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(200, text=AXE_STUB)

        _mock_downloads(monkeypatch, handler)
        url = "https://cdn.example.com/axe.min.js"

        first = RuleEngine(url=url, cache_dir=tmp_path / "cache")
        assert await first.source() == AXE_STUB
        assert await first.source() == AXE_STUB
        assert first.cache_path.read_text(encoding="utf-8") == AXE_STUB

        second = RuleEngine(url=url, cache_dir=tmp_path / "cache")
        assert await second.source() == AXE_STUB
        assert calls == [url]

    @pytest.mark.asyncio
    async def test_download_failure_is_engine_error(self, tmp_path, monkeypatch):
        _mock_downloads(monkeypatch, lambda request: httpx.Response(503))
        engine = RuleEngine(url="https://cdn.example.com/axe.min.js", cache_dir=tmp_path)

        with pytest.raises(PipelineError) as info:
            await engine.source()

        assert info.value.kind is ErrorKind.ENGINE_ERROR
        assert not engine.cache_path.exists()

    @pytest.mark.asyncio
    async def test_rejects_unexpected_download(self, tmp_path, monkeypatch):
        _mock_downloads(monkeypatch, lambda request: httpx.Response(200, text="<html>captive portal</html>"))
        engine = RuleEngine(url="https://cdn.example.com/axe.min.js", cache_dir=tmp_path)

        with pytest.raises(PipelineError) as info:
            await engine.source()
        assert info.value.kind is ErrorKind.ENGINE_ERROR
