"""Process-wide memory sampling and admission control.

A single ``ResourceGovernor`` samples process memory on a fixed interval,
keeps a running peak, and classifies pressure against two thresholds. The
pipeline reads it through ``admit()`` before any expensive work; only the
sampler writes to it.
"""

from __future__ import annotations

import asyncio
import gc
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import psutil

from .config import PipelineConfig
from .errors import ErrorKind, PipelineError

LOGGER = logging.getLogger(__name__)

_MB = 1024 * 1024


class PressureLevel(str, Enum):
    """Memory pressure classification."""

    NORMAL = "normal"
    ELEVATED = "elevated"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class MemorySample:
    """One reading from the memory probe."""

    used_bytes: int
    total_bytes: int


@dataclass(frozen=True, slots=True)
class ResourceSnapshot:
    """Latest sample, rolling peak and derived pressure level."""

    used_mb: float
    total_mb: float
    peak_mb: float
    level: PressureLevel
    captured_at: datetime

    def to_dict(self) -> dict:
        return {
            "heapUsedMB": round(self.used_mb, 2),
            "heapTotalMB": round(self.total_mb, 2),
            "peakUsageMB": round(self.peak_mb, 2),
            "level": self.level.value,
            "capturedAt": self.captured_at.isoformat(),
        }


MemoryProbe = Callable[[], MemorySample]


def process_memory() -> MemorySample:
    """Resident memory of this process and its children (the sandbox browser).

    Children that exit or become unreadable between listing and reading are
    skipped.
    """
    process = psutil.Process()
    rss = process.memory_info().rss
    for child in process.children(recursive=True):
        try:
            rss += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    total = psutil.virtual_memory().total
    return MemorySample(used_bytes=rss, total_bytes=total)


def request_reclamation() -> None:
    """Advisory collection hint; frees nothing that is still referenced."""
    gc.collect()


class ResourceGovernor:
    """Samples memory and decides whether new requests may start."""

    def __init__(
        self,
        *,
        elevated_mb: float,
        critical_mb: float,
        interval: float = 3.0,
        probe: MemoryProbe = process_memory,
        reclaim: Callable[[], None] = request_reclamation,
    ):
        if elevated_mb >= critical_mb:
            raise ValueError("elevated_mb must be below critical_mb")
        self._elevated_mb = elevated_mb
        self._critical_mb = critical_mb
        self._interval = interval
        self._probe = probe
        self._reclaim = reclaim
        self._snapshot: Optional[ResourceSnapshot] = None
        self._peak_mb = 0.0
        self._refusing = False
        self._task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> Optional[ResourceSnapshot]:
        return self._snapshot

    @property
    def peak_mb(self) -> float:
        return self._peak_mb

    @property
    def level(self) -> PressureLevel:
        return self._snapshot.level if self._snapshot else PressureLevel.NORMAL

    @property
    def refusing(self) -> bool:
        return self._refusing

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sample(self) -> ResourceSnapshot:
        """Take one reading and update peak, level and the admission gate."""
        reading = self._probe()
        used_mb = reading.used_bytes / _MB
        self._peak_mb = max(self._peak_mb, used_mb)
        level = self._classify(used_mb)

        if level is PressureLevel.CRITICAL:
            if not self._refusing:
                LOGGER.warning(
                    "Critical memory usage: %.2fMB (limit %.0fMB) - refusing new requests",
                    used_mb,
                    self._critical_mb,
                )
            self._refusing = True
        elif level is PressureLevel.NORMAL and self._refusing:
            LOGGER.info("Memory back to %.2fMB - admitting requests again", used_mb)
            self._refusing = False

        if level is not PressureLevel.NORMAL:
            LOGGER.warning("High memory usage detected: %.2fMB - requesting cleanup", used_mb)
            self._reclaim()

        self._snapshot = ResourceSnapshot(
            used_mb=used_mb,
            total_mb=reading.total_bytes / _MB,
            peak_mb=self._peak_mb,
            level=level,
            captured_at=datetime.now(timezone.utc),
        )
        return self._snapshot

    def admit(self, url: Optional[str] = None) -> None:
        """Raise ``MEMORY_EXHAUSTED`` while the gate is closed."""
        if self._refusing:
            used = self._snapshot.used_mb if self._snapshot else 0.0
            raise PipelineError(
                ErrorKind.MEMORY_EXHAUSTED,
                f"Service memory usage too high ({used:.0f}MB); request refused",
                details=round(used, 2),
                url=url,
                phase="admitted",
            )

    def reclaim(self) -> None:
        self._reclaim()

    def start(self) -> None:
        """Start the background sampler on the running loop (idempotent)."""
        if self.running:
            return
        self.sample()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.sample()
            except psutil.Error as exc:
                LOGGER.warning("Memory sampling failed: %s", exc)

    def _classify(self, used_mb: float) -> PressureLevel:
        if used_mb >= self._critical_mb:
            return PressureLevel.CRITICAL
        if used_mb >= self._elevated_mb:
            return PressureLevel.ELEVATED
        return PressureLevel.NORMAL


_GOVERNOR: Optional[ResourceGovernor] = None


def get_governor() -> ResourceGovernor:
    """Return the process-wide governor, created from the environment on first use."""
    global _GOVERNOR
    if _GOVERNOR is None:
        config = PipelineConfig.from_env()
        _GOVERNOR = ResourceGovernor(
            elevated_mb=config.memory_elevated_mb,
            critical_mb=config.memory_critical_mb,
            interval=config.memory_sample_interval,
        )
    return _GOVERNOR
