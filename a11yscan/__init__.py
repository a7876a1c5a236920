"""Bounded accessibility analysis of public web pages.

Fetches a page, strips it down to inert markup, runs the axe-core rule engine
against it inside a capability-restricted headless browser page, and returns a
size-bounded report. Every request runs under hard size, complexity, time and
memory ceilings.

Example usage:

    from a11yscan import check_accessibility, check_accessibility_async

    report = await check_accessibility_async("https://example.com")
    print(len(report.violations), "violations")

    # Synchronous
    report = check_accessibility("https://example.com")
    print(report.to_dict()["data"]["summary"])
"""

from __future__ import annotations

import asyncio
from typing import Optional

from .config import PipelineConfig, ResultLimits
from .errors import ErrorKind, PipelineError
from .governor import PressureLevel, ResourceGovernor, get_governor
from .pipeline import AnalysisPipeline, PipelineState, RequestLifecycle, run_pipeline
from .probe import ConnectivityResult, probe_url
from .report import BoundedReport, NodeEvidence, RuleFinding

__all__ = [
    # Reports
    "BoundedReport",
    "RuleFinding",
    "NodeEvidence",
    # Errors
    "ErrorKind",
    "PipelineError",
    # Configuration
    "PipelineConfig",
    "ResultLimits",
    # Pipeline
    "AnalysisPipeline",
    "PipelineState",
    "RequestLifecycle",
    "run_pipeline",
    # Memory
    "ResourceGovernor",
    "PressureLevel",
    "get_governor",
    # Connectivity
    "ConnectivityResult",
    "probe_url",
    # Analysis
    "check_accessibility",
    "check_accessibility_async",
    # MCP Server
    "mcp",
]


def get_mcp_server():
    """Get the MCP server instance (lazy import to avoid dependency if not needed)."""
    from .mcp_server import mcp

    return mcp


# Lazy import for mcp to avoid requiring fastmcp if not used
def __getattr__(name):
    if name == "mcp":
        from .mcp_server import mcp

        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


async def check_accessibility_async(
    url: str,
    *,
    config: Optional[PipelineConfig] = None,
) -> BoundedReport:
    """
    Analyze a single page and return its bounded report.

    Args:
        url: Absolute http(s) URL of the page.
        config: Optional PipelineConfig; read from the environment when omitted.

    Returns:
        BoundedReport with capped violations, incomplete findings and metadata.

    Raises:
        PipelineError: If the request is rejected or any phase fails.
    """
    return await run_pipeline(url, config=config)


def check_accessibility(
    url: str,
    *,
    config: Optional[PipelineConfig] = None,
) -> BoundedReport:
    """Synchronous wrapper for check_accessibility_async."""
    return asyncio.run(check_accessibility_async(url, config=config))
