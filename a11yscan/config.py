"""Pipeline limits and their environment-variable overrides.

Values are read from the environment at call time (``PipelineConfig.from_env``)
so that late ``.env`` loading and test monkeypatching both work. Every variable
uses the ``A11Y_`` prefix, e.g. ``A11Y_MAX_DOM_ELEMENTS=3000``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

LOGGER = logging.getLogger(__name__)

_MB = 1024 * 1024

# Appended to truncated markup so the sandbox parser sees closed structure.
TRUNCATION_SUFFIX = "</main></body></html>"

DEFAULT_ENGINE_URL = "https://cdn.jsdelivr.net/npm/axe-core@4.10.2/axe.min.js"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "a11yscan"

ENV_PREFIX = "A11Y_"

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; AccessibilityBot/1.0)"

# Rule-set selector: WCAG 2.x level A and AA.
GUIDELINE_TAGS: List[str] = ["wcag2a", "wcag2aa"]

# Rules dropped whenever the page is complex or the process is under memory pressure.
EXPENSIVE_RULES: List[str] = [
    "color-contrast",
    "focus-order-semantics",
    "scrollable-region-focusable",
    "css-orientation-lock",
]

# Rules dropped for every run.
ALWAYS_DISABLED_RULES: List[str] = ["focus-order-semantics"]


@dataclass(frozen=True)
class ResultLimits:
    """Caps applied by the result shaper."""

    max_violations: int = 50
    max_incomplete: int = 25
    max_violation_nodes: int = 5
    max_incomplete_nodes: int = 3
    max_targets: int = 2
    max_html_chars: int = 100
    max_summary_chars: int = 150

    def __post_init__(self) -> None:
        for item in fields(self):
            if getattr(self, item.name) < 1:
                raise ValueError(f"{item.name} must be at least 1")


@dataclass(frozen=True)
class PipelineConfig:
    """Every ceiling and deadline the pipeline enforces.

    Durations are seconds, sizes are bytes unless the name says otherwise.
    """

    max_html_bytes: int = 5 * _MB
    max_content_length: int = 20 * _MB
    request_timeout: float = 30.0
    max_redirects: int = 2
    verify_tls: bool = True
    user_agent: str = DEFAULT_USER_AGENT

    sandbox_timeout: float = 30.0
    analysis_timeout: float = 45.0
    request_deadline: float = 120.0
    max_dom_elements: int = 5000
    complex_site_threshold: int = 2000
    complex_timeout_factor: float = 0.75
    headless: bool = True

    poll_interval: float = 0.1
    max_poll_attempts: int = 600
    complex_poll_interval: float = 0.2
    complex_max_poll_attempts: int = 300

    memory_sample_interval: float = 3.0
    memory_elevated_mb: float = 300.0
    memory_critical_mb: float = 450.0
    reclaim_delay: float = 0.1

    engine_script: Optional[str] = None
    engine_url: str = DEFAULT_ENGINE_URL
    cache_dir: Path = DEFAULT_CACHE_DIR

    environment: str = "production"

    limits: ResultLimits = field(default_factory=ResultLimits)
    complex_limits: ResultLimits = field(
        default_factory=lambda: ResultLimits(max_violations=25, max_incomplete=10)
    )

    def __post_init__(self) -> None:
        if self.max_html_bytes <= len(TRUNCATION_SUFFIX.encode("utf-8")):
            raise ValueError("max_html_bytes must exceed the truncation suffix length")
        if self.max_content_length <= 0:
            raise ValueError("max_content_length must be positive")
        if self.max_redirects < 0:
            raise ValueError("max_redirects cannot be negative")
        for name in (
            "request_timeout",
            "sandbox_timeout",
            "analysis_timeout",
            "request_deadline",
            "poll_interval",
            "complex_poll_interval",
            "memory_sample_interval",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be greater than 0")
        if self.max_poll_attempts < 1 or self.complex_max_poll_attempts < 1:
            raise ValueError("poll attempt caps must be at least 1")
        if not 0 < self.complex_timeout_factor <= 1:
            raise ValueError("complex_timeout_factor must be in (0, 1]")
        if self.complex_site_threshold > self.max_dom_elements:
            raise ValueError("complex_site_threshold cannot exceed max_dom_elements")
        if self.memory_elevated_mb >= self.memory_critical_mb:
            raise ValueError("memory_elevated_mb must be below memory_critical_mb")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    def limits_for(self, complex_site: bool) -> ResultLimits:
        return self.complex_limits if complex_site else self.limits

    def analysis_budget(self, complex_site: bool) -> Tuple[float, float, int]:
        """Return ``(deadline_seconds, poll_interval, max_poll_attempts)``."""
        if complex_site:
            return (
                self.analysis_timeout * self.complex_timeout_factor,
                self.complex_poll_interval,
                self.complex_max_poll_attempts,
            )
        return self.analysis_timeout, self.poll_interval, self.max_poll_attempts

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes) if changes else self

    @classmethod
    def env_names(cls) -> Dict[str, str]:
        """Map each environment variable to the field it overrides."""
        return {
            f"{ENV_PREFIX}{item.name.upper()}": item.name
            for item in fields(cls)
            if item.name not in ("limits", "complex_limits")
        }

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        defaults = cls()
        values: Dict[str, Any] = {}
        for env_name, name in cls.env_names().items():
            raw = os.getenv(env_name)
            if raw is None or not raw.strip():
                continue
            default = getattr(defaults, name)
            values[name] = _coerce(name, raw.strip(), default)
        return cls(**values)


def _coerce(name: str, raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        lowered = raw.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        LOGGER.warning("Invalid boolean for A11Y_%s: '%s'; using %s.", name.upper(), raw, default)
        return default
    if isinstance(default, Path):
        return Path(raw).expanduser()
    if isinstance(default, (int, float)):
        kind = type(default)
        try:
            return kind(raw)
        except ValueError:
            LOGGER.warning(
                "Invalid %s for A11Y_%s: '%s'; using %s.",
                kind.__name__,
                name.upper(),
                raw,
                default,
            )
            return default
    return raw
