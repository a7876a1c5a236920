"""Output and formatting helpers for CLI commands."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .errors import PipelineError
from .report import BoundedReport, RuleFinding

_IMPACT_ORDER = {"critical": 0, "serious": 1, "moderate": 2, "minor": 3}


def _sorted_by_impact(findings: List[RuleFinding]) -> List[RuleFinding]:
    return sorted(findings, key=lambda item: _IMPACT_ORDER.get(item.impact or "", 4))


def _format_findings(title: str, findings: List[RuleFinding]) -> List[str]:
    lines = [f"## {title} ({len(findings)})", ""]
    if not findings:
        lines.append("_None._")
        lines.append("")
        return lines

    for finding in _sorted_by_impact(findings):
        impact = finding.impact or "unknown"
        lines.append(f"### {finding.id} ({impact})")
        if finding.help:
            lines.append(finding.help)
        if finding.help_url:
            lines.append(finding.help_url)
        lines.append("")
        for node in finding.nodes:
            target = ", ".join(node.target) or "(no selector)"
            lines.append(f"- `{target}`")
            if node.failure_summary:
                lines.append(f"  {node.failure_summary}")
        lines.append("")
    return lines


def format_report_markdown(report: BoundedReport) -> str:
    """Format a report as markdown, most severe findings first."""
    lines = [f"# Accessibility report: {report.url}"]
    if report.final_url and report.final_url != report.url:
        lines.append(f"_Redirected to {report.final_url}_")
    lines.append(
        f"_{len(report.violations)} violations, {len(report.incomplete)} incomplete, "
        f"{report.pass_count} passed rules, {report.elapsed_ms}ms_"
    )
    lines.append("")

    notes = []
    if report.complex_site:
        notes.append(f"complex page ({report.element_count} elements), reduced rule set")
    if report.html_truncated:
        notes.append("HTML was truncated before analysis")
    if report.results_truncated:
        notes.append("results were capped")
    if notes:
        lines.append("**Note:** " + "; ".join(notes))
        lines.append("")

    lines.extend(_format_findings("Violations", report.violations))
    lines.extend(_format_findings("Needs review", report.incomplete))
    return "\n".join(lines).rstrip() + "\n"


def format_error_markdown(error: PipelineError) -> str:
    """Format a pipeline error for the terminal."""
    lines = [f"# Analysis failed: {error.kind.value}", "", error.message]
    if error.details is not None:
        lines.append(f"Details: {error.details}")
    if error.suggestion:
        lines.append("")
        lines.append(f"**Suggestion:** {error.suggestion}")
    return "\n".join(lines) + "\n"


def url_to_filename(url: str) -> str:
    """Convert URL to a safe filename."""
    parsed = urlparse(url)
    path = parsed.path.strip("/").replace("/", "_") or "index"
    host = parsed.netloc.replace(":", "_").replace(".", "_")
    return f"{host}_{path}"[:100]


def _render(payload: Dict[str, Any], markdown: str, json_output: bool) -> str:
    if json_output:
        return json.dumps(payload, indent=2, ensure_ascii=False)
    return markdown


def write_report(
    report: BoundedReport,
    output: Optional[str],
    json_output: bool,
) -> None:
    """Write a report to stdout, a file, or a directory."""
    text = _render(report.to_dict(), format_report_markdown(report), json_output)

    if output is None:
        print(text)
        return

    path = Path(output)
    if output.endswith("/") or path.is_dir():
        suffix = ".json" if json_output else ".md"
        path = path / (url_to_filename(report.url) + suffix)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    logging.info("Wrote %s", path)


def write_error(error: PipelineError, json_output: bool) -> None:
    """Print a pipeline error in the requested format."""
    print(_render(error.to_dict(), format_error_markdown(error), json_output))
