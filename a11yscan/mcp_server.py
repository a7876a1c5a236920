"""MCP Server for bounded accessibility analysis.

Provides tools for:
- Checking a page against WCAG 2.x A/AA rules (axe-core)
- Reporting service health and memory pressure
- Testing whether a URL is reachable before analyzing it

Supports both STDIO and HTTP transports. Over HTTP the same operations are
also served as plain JSON routes:

    POST /check-accessibility-static   {"url": "..."}
    GET  /health
    POST /test-connectivity            {"url": "..."}

Usage:
    # STDIO (for Claude Desktop, etc.)
    python -m a11yscan.mcp_server

    # HTTP (for remote access)
    python -m a11yscan.mcp_server --transport http --port 8000

    # Or via FastMCP CLI
    fastmcp run a11yscan/mcp_server.py:mcp --transport http --port 8000

Environment Variables:
    A11Y_MAX_HTML_BYTES: Sanitized HTML ceiling in bytes (default: 5MB)
    A11Y_MAX_DOM_ELEMENTS: Element ceiling for the sandbox (default: 5000)
    A11Y_ANALYSIS_TIMEOUT: Rule engine deadline in seconds (default: 45)
    A11Y_MEMORY_CRITICAL_MB: Memory level that refuses new requests (default: 450)
    A11Y_ENVIRONMENT: "development" adds exception text to error details
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv
from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from .config import PipelineConfig
from .errors import ErrorKind, PipelineError
from .governor import get_governor
from .pipeline import AnalysisPipeline, validate_url
from .probe import probe_url

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
LOGGER = logging.getLogger(__name__)

# Load .env before reading environment variables
load_dotenv()

_STARTED = time.monotonic()
_PIPELINE: Optional[AnalysisPipeline] = None

# Create the MCP server
mcp = FastMCP(
    name="Accessibility Checker",
    instructions="""
    An accessibility analysis server that provides:

    1. check_accessibility: Analyze a public web page against WCAG 2.x A/AA
       rules. Returns a bounded JSON report with violations, incomplete
       findings and a summary. Page scripts, event handlers and network
       access are stripped or disabled; only the rule engine runs inside
       the sandbox.

    2. health: Service status, memory usage and active limits.

    3. test_connectivity: Check that a URL is reachable (HEAD request only).

    Errors are returned as JSON objects with "success": false, an "error" kind
    and a "suggestion".
    """,
)


def _get_pipeline() -> AnalysisPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = AnalysisPipeline(PipelineConfig.from_env(), governor=get_governor())
    return _PIPELINE


def _service_version() -> str:
    try:
        return version("a11yscan")
    except PackageNotFoundError:
        return "0.0.0"


def _format_uptime(seconds: float) -> str:
    return f"{int(seconds // 60)}m {int(seconds % 60)}s"


async def _check(url: Any) -> Tuple[int, Dict[str, Any]]:
    """Run one analysis and return ``(http_status, body)``."""
    try:
        get_governor().start()
        report = await _get_pipeline().run(url)
    except PipelineError as exc:
        return exc.http_status, exc.to_dict()
    except Exception:
        LOGGER.exception("Accessibility check crashed for %s", url)
        return _server_error(url)
    return 200, report.to_dict()


def _health() -> Tuple[int, Dict[str, Any]]:
    governor = get_governor()
    snapshot = governor.snapshot or governor.sample()
    config = _get_pipeline().config
    body = {
        "success": True,
        "status": "overloaded" if governor.refusing else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "a11yscan",
        "version": _service_version(),
        "uptime": _format_uptime(time.monotonic() - _STARTED),
        "memory": snapshot.to_dict(),
        "config": {
            "maxHtmlSizeMB": round(config.max_html_bytes / (1024 * 1024), 2),
            "maxDomElements": config.max_dom_elements,
            "analysisTimeoutSec": config.analysis_timeout,
            "memoryLimitMB": config.memory_critical_mb,
        },
    }
    return (503 if governor.refusing else 200), body


async def _connectivity(url: Any) -> Tuple[int, Dict[str, Any]]:
    try:
        normalized = validate_url(url)
        result = await probe_url(normalized)
    except PipelineError as exc:
        return exc.http_status, exc.to_dict()
    except Exception:
        LOGGER.exception("Connectivity check crashed for %s", url)
        return _server_error(url)
    return 200, result.to_dict()


def _server_error(url: Any) -> Tuple[int, Dict[str, Any]]:
    error = PipelineError(
        ErrorKind.SERVER_ERROR,
        "Internal server error during accessibility check",
        url=url if isinstance(url, str) else None,
    )
    return error.http_status, error.to_dict()


async def _read_url(request: Request) -> Any:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body.get("url") if isinstance(body, dict) else None


# =============================================================================
# MCP TOOLS
# =============================================================================


@mcp.tool
async def check_accessibility(url: str) -> str:
    """
    Analyze a web page for WCAG 2.x level A and AA accessibility issues.

    Args:
        url: Absolute http:// or https:// URL of the page to analyze

    Returns:
        JSON report. On success: {"success": true, "data": {...}} with
        "summary", "violations", "incomplete", "performance" and "metadata".
        On failure: {"success": false, "error": KIND, "message": ...,
        "suggestion": ...}.

    Examples:
        check_accessibility(url="https://example.com")
    """
    LOGGER.info("Accessibility check requested for %s", url)
    _, body = await _check(url)
    return json.dumps(body, indent=2, ensure_ascii=False)


@mcp.tool
async def health() -> str:
    """
    Report service status, memory usage and the active analysis limits.

    Returns:
        JSON object with "status" ("healthy" or "overloaded"), "memory" and
        "config".
    """
    _, body = _health()
    return json.dumps(body, indent=2, ensure_ascii=False)


@mcp.tool
async def test_connectivity(url: str) -> str:
    """
    Check that a URL answers a HEAD request, without analyzing it.

    Args:
        url: Absolute http:// or https:// URL

    Returns:
        JSON object with the HTTP status, content type and server header,
        or a structured network error.
    """
    _, body = await _connectivity(url)
    return json.dumps(body, indent=2, ensure_ascii=False)


# =============================================================================
# HTTP ROUTES
# =============================================================================


@mcp.custom_route("/check-accessibility-static", methods=["POST"])
async def check_accessibility_route(request: Request) -> JSONResponse:
    status, body = await _check(await _read_url(request))
    return JSONResponse(body, status_code=status)


@mcp.custom_route("/health", methods=["GET"])
async def health_route(request: Request) -> JSONResponse:
    status, body = _health()
    return JSONResponse(body, status_code=status)


@mcp.custom_route("/test-connectivity", methods=["POST"])
async def test_connectivity_route(request: Request) -> JSONResponse:
    status, body = await _connectivity(await _read_url(request))
    return JSONResponse(body, status_code=status)


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for running the MCP server."""
    parser = argparse.ArgumentParser(
        description="Run the accessibility checker MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    A11Y_MAX_DOM_ELEMENTS    Element ceiling for the sandbox (default: 5000)
    A11Y_ANALYSIS_TIMEOUT    Rule engine deadline in seconds (default: 45)
    A11Y_MEMORY_CRITICAL_MB  Memory level that refuses new requests (default: 450)
    A11Y_ENGINE_SCRIPT       Local axe.min.js instead of downloading it

Examples:
    # STDIO transport (default, for Claude Desktop)
    python -m a11yscan.mcp_server

    # HTTP transport (for remote access)
    python -m a11yscan.mcp_server --transport http --port 8000

    # Custom host/port
    python -m a11yscan.mcp_server --transport http --host 0.0.0.0 --port 9000
""",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "http"],
        default="stdio",
        help="Transport protocol (default: stdio)",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to for HTTP transport (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to for HTTP transport (default: 8000)",
    )

    args = parser.parse_args()

    # Log configuration
    config = _get_pipeline().config
    LOGGER.info("Max HTML size: %.1fMB", config.max_html_bytes / (1024 * 1024))
    LOGGER.info("Max DOM elements: %d", config.max_dom_elements)
    LOGGER.info("Analysis timeout: %.0fs", config.analysis_timeout)
    LOGGER.info("Memory limits: elevated %.0fMB, critical %.0fMB", config.memory_elevated_mb, config.memory_critical_mb)

    if args.transport == "http":
        LOGGER.info("Starting MCP server on http://%s:%d/mcp", args.host, args.port)
        mcp.run(transport="http", host=args.host, port=args.port)
    else:
        LOGGER.info("Starting MCP server with STDIO transport")
        mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
