"""Isolated, capability-restricted document models for analysis.

A ``Sandbox`` owns one driver (by default a fresh headless Chromium page via
Playwright) holding one sanitized document. Before the document is parsed, a
``CapabilityTable`` is installed as an init script so that dialogs, popups,
timers, network primitives and console output are no-ops. The driver also
aborts every request except the single navigation that serves the sanitized
markup, so the page can neither re-fetch nor exfiltrate.

Teardown is guarded: ``Sandbox.teardown()`` disposes the driver exactly once no
matter how many exit paths call it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields
from typing import Any, Callable, Optional, Protocol, Set

from .document import SanitizedDocument
from .errors import ErrorKind, PipelineError

LOGGER = logging.getLogger(__name__)

# Hook the runner uses to hand real timers to the rule engine (one-shot).
ENGINE_TIMERS_HOOK = "__a11yTakeTimers"

COUNT_ELEMENTS_SCRIPT = "() => document.getElementsByTagName('*').length"

_NO_DIALOGS = """
window.alert = () => undefined;
window.confirm = () => false;
window.prompt = () => null;
window.print = () => undefined;
"""

_NO_POPUPS = """
window.open = () => null;
"""

_NO_TIMERS = """
const engineTimers = {
  setTimeout: window.setTimeout.bind(window),
  clearTimeout: window.clearTimeout.bind(window),
  setInterval: window.setInterval.bind(window),
  clearInterval: window.clearInterval.bind(window),
};
Object.defineProperty(window, '%(hook)s', {
  configurable: true,
  enumerable: false,
  value: () => {
    delete window['%(hook)s'];
    return engineTimers;
  },
});
window.setTimeout = () => 0;
window.setInterval = () => 0;
window.requestAnimationFrame = () => 0;
window.requestIdleCallback = () => 0;
""" % {"hook": ENGINE_TIMERS_HOOK}

_NO_NETWORK = """
const networkDisabled = () => { throw new TypeError('network access is disabled'); };
window.fetch = () => Promise.reject(new TypeError('network access is disabled'));
window.XMLHttpRequest = networkDisabled;
window.WebSocket = networkDisabled;
window.EventSource = networkDisabled;
if (window.Navigator && Navigator.prototype.sendBeacon) {
  Navigator.prototype.sendBeacon = () => false;
}
"""

_NO_CONSOLE = """
for (const method of ['log', 'info', 'warn', 'error', 'debug', 'trace', 'table', 'dir']) {
  console[method] = () => undefined;
}
"""


@dataclass(frozen=True)
class CapabilityTable:
    """Named capability slots, each replaced by a no-op implementation."""

    dialogs: str = _NO_DIALOGS
    popups: str = _NO_POPUPS
    timers: str = _NO_TIMERS
    network: str = _NO_NETWORK
    console: str = _NO_CONSOLE

    def to_init_script(self) -> str:
        body = "\n".join(
            f"// {item.name}\n{getattr(self, item.name).strip()}" for item in fields(self)
        )
        return f"(() => {{\n{body}\n}})();"


class SandboxDriver(Protocol):
    """What a sandbox needs from the isolated runtime behind it."""

    async def open(self, capabilities: CapabilityTable) -> None: ...

    async def load(self, markup: str, url: str) -> None: ...

    async def evaluate(self, expression: str) -> Any: ...

    async def dispose(self) -> None: ...


class PlaywrightDriver:
    """Headless Chromium page serving one document from memory."""

    def __init__(self, *, headless: bool = True):
        self._headless = headless
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None
        self._markup: Optional[str] = None
        self._served = False

    async def open(self, capabilities: CapabilityTable) -> None:
        try:
            from playwright.async_api import async_playwright
        except ImportError as exc:
            raise RuntimeError(
                "Playwright is required for the analysis sandbox. "
                "Install browsers with 'playwright install chromium'."
            ) from exc

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=["--disable-gpu", "--disable-dev-shm-usage", "--disable-extensions"],
        )
        self._context = await self._browser.new_context(
            java_script_enabled=True,
            bypass_csp=True,
            service_workers="block",
            accept_downloads=False,
        )
        await self._context.add_init_script(capabilities.to_init_script())
        await self._context.route("**/*", self._route)
        self._page = await self._context.new_page()
        self._page.on("console", self._on_console)
        self._page.on("pageerror", self._on_page_error)

    async def load(self, markup: str, url: str) -> None:
        self._markup = markup
        # No Playwright timeout: the construction deadline is enforced by the caller.
        await self._require_page().goto(url, wait_until="domcontentloaded", timeout=0)

    async def evaluate(self, expression: str) -> Any:
        return await self._require_page().evaluate(expression)

    async def dispose(self) -> None:
        context, browser, playwright = self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None
        self._markup = None
        try:
            if context is not None:
                await context.close()
        finally:
            try:
                if browser is not None:
                    await browser.close()
            finally:
                if playwright is not None:
                    await playwright.stop()

    async def _route(self, route: Any) -> None:
        request = route.request
        if not self._served and self._markup is not None and request.is_navigation_request():
            self._served = True
            await route.fulfill(
                status=200,
                content_type="text/html; charset=utf-8",
                body=self._markup,
            )
            return
        LOGGER.debug("Sandbox blocked request: %s %s", request.method, request.url)
        await route.abort("blockedbyclient")

    def _require_page(self) -> Any:
        if self._page is None:
            raise RuntimeError("Sandbox page is not open")
        return self._page

    @staticmethod
    def _on_console(message: Any) -> None:
        LOGGER.debug("Sandbox console [%s]: %s", message.type, message.text)

    @staticmethod
    def _on_page_error(error: Any) -> None:
        LOGGER.debug("Sandbox page error: %s", error)


class Sandbox:
    """One request's isolated document model and the host tasks bound to it."""

    def __init__(
        self,
        driver: SandboxDriver,
        *,
        url: str,
        reclaim: Optional[Callable[[], None]] = None,
        reclaim_delay: float = 0.1,
    ):
        self.url = url
        self.element_count = 0
        self._driver = driver
        self._reclaim = reclaim
        self._reclaim_delay = reclaim_delay
        self._tasks: Set[asyncio.Future] = set()
        self._torn_down = False

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    def track(self, task: asyncio.Future) -> asyncio.Future:
        """Bind a host task to this sandbox; teardown cancels it if still pending."""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def open(self, capabilities: CapabilityTable) -> None:
        self._ensure_live()
        await self._driver.open(capabilities)

    async def load(self, markup: str) -> None:
        self._ensure_live()
        await self._driver.load(markup, self.url)

    async def evaluate(self, expression: str) -> Any:
        self._ensure_live()
        return await self._driver.evaluate(expression)

    async def count_elements(self) -> int:
        return int(await self.evaluate(COUNT_ELEMENTS_SCRIPT) or 0)

    async def teardown(self) -> bool:
        """Release the sandbox. Returns False when it was already released."""
        if self._torn_down:
            return False
        self._torn_down = True

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        try:
            await self._driver.dispose()
        except Exception as exc:
            LOGGER.warning("Error closing sandbox for %s: %s", self.url, exc)

        if self._reclaim is not None:
            self._reclaim()
            await asyncio.sleep(self._reclaim_delay)
            self._reclaim()
        LOGGER.debug("Sandbox for %s torn down", self.url)
        return True

    def _ensure_live(self) -> None:
        if self._torn_down:
            raise RuntimeError("Sandbox has already been torn down")


DriverFactory = Callable[[], SandboxDriver]


class SandboxManager:
    """Creates sandboxes and builds documents into them under a deadline."""

    def __init__(
        self,
        driver_factory: Optional[DriverFactory] = None,
        *,
        capabilities: Optional[CapabilityTable] = None,
        headless: bool = True,
        reclaim: Optional[Callable[[], None]] = None,
        reclaim_delay: float = 0.1,
    ):
        self._driver_factory = driver_factory or (lambda: PlaywrightDriver(headless=headless))
        self._capabilities = capabilities or CapabilityTable()
        self._reclaim = reclaim
        self._reclaim_delay = reclaim_delay

    def create(self, url: str) -> Sandbox:
        """Allocate a sandbox for ``url``; nothing is started yet."""
        return Sandbox(
            self._driver_factory(),
            url=url,
            reclaim=self._reclaim,
            reclaim_delay=self._reclaim_delay,
        )

    async def build(
        self,
        sandbox: Sandbox,
        document: SanitizedDocument,
        *,
        timeout: float,
        max_elements: int,
    ) -> int:
        """Load ``document`` into ``sandbox`` and return its element count.

        Raises:
            PipelineError: ``SANDBOX_TIMEOUT`` when construction outlives
                ``timeout``; ``TOO_COMPLEX`` when the element count exceeds
                ``max_elements``. The caller owns teardown in both cases.
        """
        if timeout <= 0:
            raise self._timeout(sandbox.url, timeout)

        LOGGER.debug("Building sandbox for %s (timeout %.1fs)", sandbox.url, timeout)
        try:
            count = await asyncio.wait_for(self._construct(sandbox, document), timeout)
        except asyncio.TimeoutError as exc:
            raise self._timeout(sandbox.url, timeout) from exc

        sandbox.element_count = count
        LOGGER.info("DOM elements found: %d", count)
        if count > max_elements:
            raise PipelineError(
                ErrorKind.TOO_COMPLEX,
                f"Website too complex: {count} DOM elements (max: {max_elements}). "
                "Try a simpler page.",
                details={"elementCount": count, "maxElements": max_elements},
                url=sandbox.url,
                phase="sandbox_building",
            )
        return count

    async def _construct(self, sandbox: Sandbox, document: SanitizedDocument) -> int:
        await sandbox.open(self._capabilities)
        await sandbox.load(document.html)
        return await sandbox.count_elements()

    @staticmethod
    def _timeout(url: str, timeout: float) -> PipelineError:
        return PipelineError(
            ErrorKind.SANDBOX_TIMEOUT,
            "Sandbox initialization timeout - site too complex",
            details=round(max(timeout, 0.0), 3),
            url=url,
            phase="sandbox_building",
        )
