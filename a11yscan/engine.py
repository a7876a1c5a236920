"""axe-core source loading and the in-page runner script.

The engine source is read from ``engine_script`` when configured, otherwise it
is downloaded once from ``engine_url`` and cached on disk under ``cache_dir``.
The runner script evaluates that source inside a wrapper that binds the real
timer functions lexically, so the page itself keeps its no-op timers while the
engine can still schedule its own work. Results are slimmed in the page and
written to a sentinel on ``window``; the host polls for them.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .config import (
    ALWAYS_DISABLED_RULES,
    DEFAULT_CACHE_DIR,
    DEFAULT_ENGINE_URL,
    EXPENSIVE_RULES,
    GUIDELINE_TAGS,
)
from .errors import ErrorKind, PipelineError
from .sandbox import ENGINE_TIMERS_HOOK

LOGGER = logging.getLogger(__name__)

RESULT_SENTINEL = "__a11yResults"
ERROR_SENTINEL = "__a11yError"

_DOWNLOAD_TIMEOUT = 30.0

_ENGINE_PLACEHOLDER = "/*@ENGINE_SOURCE@*/"

_RUNNER_TEMPLATE = """(() => {
  const takeTimers = window['%(hook)s'];
  const timers = typeof takeTimers === 'function'
    ? takeTimers()
    : { setTimeout, clearTimeout, setInterval, clearInterval };
  try {
    (function (setTimeout, clearTimeout, setInterval, clearInterval) {
/*@ENGINE_SOURCE@*/
    }).call(window, timers.setTimeout, timers.clearTimeout, timers.setInterval, timers.clearInterval);
  } catch (error) {
    window['%(error)s'] = 'Setup failed: ' + (error && error.message ? error.message : String(error));
    return;
  }
  if (!window.axe || typeof window.axe.run !== 'function') {
    window['%(error)s'] = 'Setup failed: rule engine did not initialise';
    return;
  }
  const options = %(options)s;
  const maxNodes = %(max_nodes)d;
  const slim = (entry) => ({
    id: entry.id,
    impact: entry.impact || null,
    description: entry.description || '',
    help: entry.help || '',
    helpUrl: entry.helpUrl || '',
    tags: entry.tags || [],
    nodes: (entry.nodes || []).slice(0, maxNodes).map((node) => ({
      html: node.html || '',
      target: node.target || [],
      failureSummary: node.failureSummary || '',
    })),
  });
  const started = Date.now();
  try {
    window.axe.run(document, options).then((results) => {
      try {
        window['%(result)s'] = {
          violations: (results.violations || []).map(slim),
          incomplete: (results.incomplete || []).map(slim),
          passes: (results.passes || []).length,
          url: results.url || null,
          analysisTimeMs: Date.now() - started,
        };
      } catch (error) {
        window['%(error)s'] = 'Failed to process results: ' + error.message;
      }
    }).catch((error) => {
      window['%(error)s'] = 'Analysis failed: ' + (error && error.message ? error.message : String(error));
    });
  } catch (error) {
    window['%(error)s'] = 'Setup failed: ' + error.message;
  }
})()"""


def build_run_options(*, reduced: bool) -> Dict[str, Any]:
    """Options for ``axe.run``: WCAG A + AA, violations and incomplete only."""
    disabled = set(ALWAYS_DISABLED_RULES)
    if reduced:
        disabled.update(EXPENSIVE_RULES)
    return {
        "runOnly": {"type": "tag", "values": list(GUIDELINE_TAGS)},
        "resultTypes": ["violations", "incomplete"],
        "rules": {rule: {"enabled": False} for rule in sorted(disabled)},
        "elementRef": False,
        "ancestry": False,
        "xpath": False,
        "performanceTimer": False,
    }


class RuleEngine:
    """Supplies axe-core source and renders runner scripts around it."""

    def __init__(
        self,
        *,
        script_path: Optional[str] = None,
        url: str = DEFAULT_ENGINE_URL,
        cache_dir: Path = DEFAULT_CACHE_DIR,
        source: Optional[str] = None,
    ):
        self._script_path = script_path
        self._url = url
        self._cache_dir = Path(cache_dir)
        self._source = source
        self._lock = asyncio.Lock()

    @property
    def cache_path(self) -> Path:
        digest = hashlib.sha256(self._url.encode("utf-8")).hexdigest()[:16]
        return self._cache_dir / f"axe-{digest}.js"

    async def source(self) -> str:
        """Return the engine source, loading it on first use.

        Raises:
            PipelineError: ``ENGINE_ERROR`` when no source can be obtained.
        """
        if self._source is not None:
            return self._source
        async with self._lock:
            if self._source is None:
                try:
                    self._source = await self._load()
                except (OSError, ValueError, httpx.HTTPError) as exc:
                    LOGGER.error("Could not load rule engine: %s", exc)
                    raise PipelineError(
                        ErrorKind.ENGINE_ERROR,
                        "Rule engine source unavailable",
                        details=type(exc).__name__,
                        phase="analyzing",
                    ) from exc
        return self._source

    async def build_script(self, *, reduced: bool, max_nodes: int) -> str:
        """Render the runner IIFE for one analysis."""
        source = await self.source()
        header = _RUNNER_TEMPLATE % {
            "hook": ENGINE_TIMERS_HOOK,
            "error": ERROR_SENTINEL,
            "result": RESULT_SENTINEL,
            "options": json.dumps(build_run_options(reduced=reduced)),
            "max_nodes": max(1, int(max_nodes)),
        }
        # Plain replacement: the engine source is full of '%' and braces.
        return header.replace(_ENGINE_PLACEHOLDER, source, 1)

    async def _load(self) -> str:
        if self._script_path:
            path = Path(self._script_path).expanduser()
            LOGGER.debug("Loading rule engine from %s", path)
            return path.read_text(encoding="utf-8")

        cached = self.cache_path
        if cached.is_file():
            LOGGER.debug("Using cached rule engine %s", cached)
            return cached.read_text(encoding="utf-8")

        LOGGER.info("Downloading rule engine from %s", self._url)
        async with httpx.AsyncClient(timeout=_DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
            response = await client.get(self._url)
            response.raise_for_status()
            text = response.text

        if "axe" not in text:
            raise ValueError(f"Downloaded file from {self._url} does not look like axe-core")

        cached.parent.mkdir(parents=True, exist_ok=True)
        cached.write_text(text, encoding="utf-8")
        LOGGER.info("Cached rule engine at %s", cached)
        return text
