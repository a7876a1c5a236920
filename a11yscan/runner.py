"""Inject the rule engine into a sandbox and poll for its outcome.

The engine reports back through two ``window`` sentinels, one for results and
one for errors. The runner does not await the engine's promise. Instead it
probes the sentinels on a fixed interval until one is set, the deadline
passes, or the attempt cap is reached. Each of those ends in a distinct
outcome, and every failure outcome tears the sandbox down before raising.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .engine import ERROR_SENTINEL, RESULT_SENTINEL, RuleEngine
from .errors import ErrorKind, PipelineError
from .report import RawAnalysisResult
from .sandbox import Sandbox

LOGGER = logging.getLogger(__name__)

PROBE_SCRIPT = (
    f"() => window['{RESULT_SENTINEL}'] !== undefined ? 'result'"
    f" : (window['{ERROR_SENTINEL}'] !== undefined ? 'error' : 'pending')"
)
READ_RESULT_SCRIPT = f"() => window['{RESULT_SENTINEL}']"
READ_ERROR_SCRIPT = f"() => String(window['{ERROR_SENTINEL}'])"


class PollState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class PollOutcome:
    state: PollState
    attempts: int
    payload: Any = None
    error: Optional[str] = None


class AnalysisRunner:
    """Runs one analysis against a built sandbox."""

    def __init__(self, engine: RuleEngine):
        self._engine = engine

    async def run(
        self,
        sandbox: Sandbox,
        *,
        timeout: float,
        poll_interval: float,
        max_attempts: int,
        reduced: bool = False,
        max_nodes: int = 5,
    ) -> RawAnalysisResult:
        """Inject, poll and return the raw engine result.

        Raises:
            PipelineError: ``ANALYSIS_TIMEOUT``, ``POLL_EXHAUSTED`` or
                ``ENGINE_ERROR``. The sandbox is torn down first.
        """
        try:
            return await self._run(
                sandbox,
                timeout=timeout,
                poll_interval=poll_interval,
                max_attempts=max_attempts,
                reduced=reduced,
                max_nodes=max_nodes,
            )
        except PipelineError:
            await sandbox.teardown()
            raise

    async def _run(
        self,
        sandbox: Sandbox,
        *,
        timeout: float,
        poll_interval: float,
        max_attempts: int,
        reduced: bool,
        max_nodes: int,
    ) -> RawAnalysisResult:
        give_up = time.monotonic() + max(timeout, 0.0)
        if timeout <= 0:
            raise self._timed_out(sandbox.url, timeout)
        # Fetching the engine on first use counts against the same deadline.
        try:
            script = await asyncio.wait_for(
                self._engine.build_script(reduced=reduced, max_nodes=max_nodes),
                give_up - time.monotonic(),
            )
        except asyncio.TimeoutError as exc:
            raise self._timed_out(sandbox.url, timeout) from exc

        LOGGER.info(
            "Starting accessibility analysis for %s (timeout %.1fs, %s rule set)",
            sandbox.url,
            timeout,
            "reduced" if reduced else "full",
        )
        remaining = give_up - time.monotonic()
        if remaining <= 0:
            raise self._timed_out(sandbox.url, timeout)
        try:
            await asyncio.wait_for(sandbox.evaluate(script), remaining)
        except asyncio.TimeoutError as exc:
            raise self._timed_out(sandbox.url, timeout) from exc
        except Exception as exc:
            raise PipelineError(
                ErrorKind.ENGINE_ERROR,
                "Failed to execute accessibility analysis",
                details=type(exc).__name__,
                url=sandbox.url,
                phase="analyzing",
            ) from exc

        poll = sandbox.track(
            asyncio.ensure_future(self._poll(sandbox, give_up, poll_interval, max_attempts))
        )
        try:
            outcome = await poll
        except Exception as exc:
            raise PipelineError(
                ErrorKind.ENGINE_ERROR,
                "Lost contact with the analysis sandbox",
                details=type(exc).__name__,
                url=sandbox.url,
                phase="analyzing",
            ) from exc

        return self._settle(sandbox.url, outcome, timeout)

    async def _poll(
        self,
        sandbox: Sandbox,
        give_up: float,
        interval: float,
        max_attempts: int,
    ) -> PollOutcome:
        attempts = 0
        state = PollState.PENDING
        while state is PollState.PENDING:
            remaining = give_up - time.monotonic()
            if remaining <= 0:
                return PollOutcome(PollState.TIMED_OUT, attempts)
            await asyncio.sleep(min(interval, remaining))
            attempts += 1

            try:
                status = await asyncio.wait_for(
                    sandbox.evaluate(PROBE_SCRIPT), max(give_up - time.monotonic(), 0.0)
                )
            except asyncio.TimeoutError:
                return PollOutcome(PollState.TIMED_OUT, attempts)

            if status == "result":
                payload = await sandbox.evaluate(READ_RESULT_SCRIPT)
                return PollOutcome(PollState.RESOLVED, attempts, payload=payload)
            if status == "error":
                message = await sandbox.evaluate(READ_ERROR_SCRIPT)
                return PollOutcome(PollState.FAILED, attempts, error=message)
            if attempts >= max_attempts:
                state = PollState.EXHAUSTED
        return PollOutcome(state, attempts)

    def _settle(self, url: str, outcome: PollOutcome, timeout: float) -> RawAnalysisResult:
        LOGGER.debug("Polling for %s ended %s after %d attempts", url, outcome.state.value, outcome.attempts)

        if outcome.state is PollState.RESOLVED:
            try:
                result = RawAnalysisResult.from_engine(outcome.payload)
            except (TypeError, ValueError) as exc:
                raise PipelineError(
                    ErrorKind.ENGINE_ERROR,
                    "Rule engine returned a malformed result",
                    details=type(exc).__name__,
                    url=url,
                    phase="analyzing",
                ) from exc
            LOGGER.info(
                "Analysis completed: %d violations, %d incomplete",
                len(result.violations),
                len(result.incomplete),
            )
            return result

        if outcome.state is PollState.FAILED:
            raise PipelineError(
                ErrorKind.ENGINE_ERROR,
                "Failed to execute accessibility analysis",
                details=outcome.error,
                url=url,
                phase="analyzing",
            )

        if outcome.state is PollState.EXHAUSTED:
            LOGGER.error(
                "Rule engine for %s produced no outcome after %d polls", url, outcome.attempts
            )
            raise PipelineError(
                ErrorKind.POLL_EXHAUSTED,
                f"No analysis result after {outcome.attempts} polling attempts",
                details=outcome.attempts,
                url=url,
                phase="analyzing",
            )

        raise self._timed_out(url, timeout)

    @staticmethod
    def _timed_out(url: str, timeout: float) -> PipelineError:
        return PipelineError(
            ErrorKind.ANALYSIS_TIMEOUT,
            f"Analysis timeout after {max(timeout, 0.0):.0f}s - website too complex",
            details=round(max(timeout, 0.0), 3),
            url=url,
            phase="analyzing",
        )
