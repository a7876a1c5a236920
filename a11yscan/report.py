"""Rule-engine findings and the bounded report returned to callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True, slots=True)
class NodeEvidence:
    """One offending element reported for a rule."""

    html: str = ""
    target: List[str] = field(default_factory=list)
    failure_summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "html": self.html,
            "target": list(self.target),
            "failureSummary": self.failure_summary,
        }


@dataclass(frozen=True, slots=True)
class RuleFinding:
    """A violated (or unresolved) rule and its node evidence."""

    id: str
    impact: Optional[str] = None
    description: str = ""
    help: str = ""
    help_url: str = ""
    tags: List[str] = field(default_factory=list)
    nodes: List[NodeEvidence] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "impact": self.impact,
            "description": self.description,
            "help": self.help,
            "helpUrl": self.help_url,
            "tags": list(self.tags),
            "nodes": [node.to_dict() for node in self.nodes],
        }


# Findings arrive from the engine as JSON objects and leave as RuleFinding.
FindingInput = Union[RuleFinding, Dict[str, Any]]


@dataclass(slots=True)
class RawAnalysisResult:
    """Unbounded result as read from the sandbox's result sentinel."""

    violations: List[FindingInput] = field(default_factory=list)
    incomplete: List[FindingInput] = field(default_factory=list)
    pass_count: int = 0
    analysis_time_ms: int = 0
    url: Optional[str] = None

    @classmethod
    def from_engine(cls, payload: Dict[str, Any]) -> "RawAnalysisResult":
        """Build from the object the runner script stores in the page."""
        if not isinstance(payload, dict):
            raise TypeError(f"Expected an object from the rule engine, got {type(payload).__name__}")
        passes = payload.get("passes", 0)
        pass_count = len(passes) if isinstance(passes, list) else int(passes or 0)
        return cls(
            violations=list(payload.get("violations") or []),
            incomplete=list(payload.get("incomplete") or []),
            pass_count=pass_count,
            analysis_time_ms=int(payload.get("analysisTimeMs") or 0),
            url=payload.get("url"),
        )


@dataclass(slots=True)
class BoundedReport:
    """The only object that leaves the pipeline on success."""

    url: str
    violations: List[RuleFinding] = field(default_factory=list)
    incomplete: List[RuleFinding] = field(default_factory=list)
    pass_count: int = 0
    elapsed_ms: int = 0
    analysis_time_ms: int = 0
    results_truncated: bool = False
    html_truncated: bool = False
    complex_site: bool = False
    final_url: Optional[str] = None
    element_count: int = 0
    html_bytes_before: int = 0
    html_bytes_after: int = 0
    memory_used_mb: float = 0.0
    peak_memory_mb: float = 0.0
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Response body in the service's public JSON shape."""
        return {
            "success": True,
            "data": {
                "url": self.url,
                "finalUrl": self.final_url or self.url,
                "timestamp": self.timestamp,
                "processingTimeMs": self.elapsed_ms,
                "performance": {
                    "memoryUsedMB": round(self.memory_used_mb, 2),
                    "peakMemoryMB": round(self.peak_memory_mb, 2),
                    "htmlSizeKB": round(self.html_bytes_after / 1024),
                    "analysisTimeMs": self.analysis_time_ms,
                    "elementCount": self.element_count,
                },
                "summary": {
                    "totalViolations": len(self.violations),
                    "totalIncomplete": len(self.incomplete),
                    "totalPasses": self.pass_count,
                    "isComplexWebsite": self.complex_site,
                    "resultsTruncated": self.results_truncated,
                },
                "violations": [finding.to_dict() for finding in self.violations],
                "incomplete": [finding.to_dict() for finding in self.incomplete],
                "metadata": {
                    "resultsTruncated": self.results_truncated,
                    "htmlTruncated": self.html_truncated,
                    "complexSite": self.complex_site,
                    "htmlBytesBefore": self.html_bytes_before,
                    "htmlBytesAfter": self.html_bytes_after,
                },
            },
        }
