"""Cap and normalize rule-engine output into a BoundedReport."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from .config import ResultLimits
from .report import BoundedReport, FindingInput, NodeEvidence, RawAnalysisResult, RuleFinding

LOGGER = logging.getLogger(__name__)

_ELLIPSIS = "…"


def shape_result(
    result: Union[RawAnalysisResult, BoundedReport],
    limits: ResultLimits,
    *,
    url: str = "",
) -> BoundedReport:
    """Produce a report whose lists and strings respect ``limits``.

    Shaping an already-shaped report only re-asserts the caps: the output is
    identical to the input when the caps have not changed.
    """
    if isinstance(result, BoundedReport):
        violations, incomplete = result.violations, result.incomplete
        pass_count = result.pass_count
        already_truncated = result.results_truncated
        base = result
    else:
        violations, incomplete = result.violations, result.incomplete
        pass_count = result.pass_count
        already_truncated = False
        base = BoundedReport(
            url=url or result.url or "",
            analysis_time_ms=result.analysis_time_ms,
        )

    kept_violations, cut_violations = _cap_findings(
        violations, limits.max_violations, limits.max_violation_nodes, limits
    )
    kept_incomplete, cut_incomplete = _cap_findings(
        incomplete, limits.max_incomplete, limits.max_incomplete_nodes, limits
    )

    truncated = already_truncated or cut_violations or cut_incomplete
    if truncated and not already_truncated:
        LOGGER.debug(
            "Results truncated: %d/%d violations, %d/%d incomplete kept",
            len(kept_violations),
            len(violations),
            len(kept_incomplete),
            len(incomplete),
        )

    return replace(
        base,
        violations=kept_violations,
        incomplete=kept_incomplete,
        pass_count=max(0, int(pass_count)),
        results_truncated=truncated,
    )


def truncate_text(text: Any, limit: int) -> str:
    """Cut ``text`` to ``limit`` characters, ellipsis included."""
    value = "" if text is None else str(text)
    if len(value) <= limit:
        return value
    return value[: limit - 1] + _ELLIPSIS


def _cap_findings(
    findings: Sequence[FindingInput],
    max_count: int,
    max_nodes: int,
    limits: ResultLimits,
) -> Tuple[List[RuleFinding], bool]:
    cut = len(findings) > max_count
    capped = [_normalize_finding(item, max_nodes, limits) for item in findings[:max_count]]
    return capped, cut


def _normalize_finding(item: FindingInput, max_nodes: int, limits: ResultLimits) -> RuleFinding:
    if isinstance(item, RuleFinding):
        finding = item
    elif isinstance(item, dict):
        finding = _finding_from_dict(item)
    else:
        raise TypeError(f"Unsupported finding type: {type(item).__name__}")

    nodes = [
        NodeEvidence(
            html=truncate_text(node.html, limits.max_html_chars),
            target=list(node.target[: limits.max_targets]),
            failure_summary=truncate_text(node.failure_summary, limits.max_summary_chars),
        )
        for node in finding.nodes[:max_nodes]
    ]
    return replace(finding, nodes=nodes)


def _finding_from_dict(raw: Dict[str, Any]) -> RuleFinding:
    return RuleFinding(
        id=str(raw.get("id") or ""),
        impact=raw.get("impact"),
        description=str(raw.get("description") or ""),
        help=str(raw.get("help") or ""),
        help_url=str(raw.get("helpUrl") or raw.get("help_url") or ""),
        tags=[str(tag) for tag in raw.get("tags") or []],
        nodes=[_node_from_dict(node) for node in raw.get("nodes") or [] if isinstance(node, dict)],
    )


def _node_from_dict(raw: Dict[str, Any]) -> NodeEvidence:
    return NodeEvidence(
        html=str(raw.get("html") or ""),
        target=list(_flatten_target(raw.get("target"))),
        failure_summary=str(raw.get("failureSummary") or raw.get("failure_summary") or ""),
    )


def _flatten_target(target: Any) -> Iterable[str]:
    # Selectors inside shadow DOM arrive as nested lists.
    if target is None:
        return
    if isinstance(target, str):
        yield target
        return
    for part in target:
        if isinstance(part, (list, tuple)):
            yield " >>> ".join(str(piece) for piece in part)
        else:
            yield str(part)
