"""Command-line interface for the accessibility checker."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .cli_config import CONFIG_ENV_FILE, load_config
from .cli_output import write_error, write_report
from .config import PipelineConfig
from .errors import PipelineError


def _load_config() -> None:
    load_config(
        config_env_file=CONFIG_ENV_FILE,
        cwd=Path.cwd(),
        load_env=load_dotenv,
        copy_file=shutil.copy,
    )


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="a11yscan",
        description="Check a web page for WCAG 2.x A/AA accessibility issues.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  # Markdown report to stdout
  a11yscan https://example.com

  # JSON report to a file
  a11yscan https://example.com --json -o report.json

  # Use a local copy of axe-core instead of downloading it
  a11yscan https://example.com --engine-script ./axe.min.js

Limits can also be set with A11Y_* environment variables or a .env file
(./.env, then ~/.config/a11yscan/.env).
""",
    )
    parser.add_argument("url", help="Absolute http:// or https:// URL to analyze")
    parser.add_argument(
        "-o",
        "--output",
        help="Output file, or directory ending in '/' (default: stdout)",
    )
    parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Output the report as JSON instead of markdown",
    )
    parser.add_argument(
        "--max-dom-elements",
        type=int,
        default=None,
        help="Refuse pages with more elements than this",
    )
    parser.add_argument(
        "--analysis-timeout",
        type=float,
        default=None,
        help="Rule engine deadline in seconds",
    )
    parser.add_argument(
        "--engine-script",
        default=None,
        help="Path to a local axe.min.js",
    )
    parser.add_argument(
        "--no-verify-tls",
        dest="verify_tls",
        action="store_false",
        default=None,
        help="Do not verify TLS certificates of the target site",
    )
    parser.add_argument(
        "--headful",
        dest="headless",
        action="store_false",
        default=None,
        help="Show the sandbox browser window (debugging)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args(argv)


def _build_config(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig.from_env().with_overrides(
        max_dom_elements=args.max_dom_elements,
        analysis_timeout=args.analysis_timeout,
        engine_script=args.engine_script,
        verify_tls=args.verify_tls,
        headless=args.headless,
    )


async def _run_async(args: argparse.Namespace) -> int:
    """Main async entry point for a11yscan."""
    from . import check_accessibility_async

    config = _build_config(args)
    logging.info("Checking: %s", args.url)
    try:
        report = await check_accessibility_async(args.url, config=config)
    except PipelineError as exc:
        write_error(exc, args.json_output)
        return 1

    write_report(report, args.output, args.json_output)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the a11yscan command."""
    args = _parse_args(argv)
    _setup_logging(args.verbose)
    _load_config()

    try:
        return asyncio.run(_run_async(args))
    except KeyboardInterrupt:
        logging.info("Interrupted")
        return 130
    except Exception as exc:
        logging.error("Error: %s", exc)
        if args.verbose:
            logging.exception("Full traceback:")
        return 1


if __name__ == "__main__":
    sys.exit(main())
