"""Render a report verdict as JSON and as a plain-text narrative."""

import json
from dataclasses import asdict
from typing import Optional

from telemetry_report.models import NONE, ReportConfig, ReportPayload, ReportVerdict


def verdict_to_dict(verdict: ReportVerdict) -> dict:
    return asdict(verdict)


def verdict_to_json(verdict: ReportVerdict) -> str:
    return json.dumps(verdict_to_dict(verdict), indent=2, sort_keys=True)


def build_narrative(
    verdict: ReportVerdict,
    payload: ReportPayload,
    config: Optional[ReportConfig] = None,
) -> str:
    """Plain-text summary of a verdict for terminal output or a notification."""
    config = config or ReportConfig()
    lines = [f"Status: {verdict.overall_status.upper()}"]

    header = f"Service: {payload.service}"
    if payload.environment:
        header += f" ({payload.environment})"
    lines.append(header)
    if payload.time_range is not None:
        lines.append(
            f"Window: {payload.time_range.start.isoformat()} to "
            f"{payload.time_range.end.isoformat()} ({payload.time_range.minutes:.0f} min)"
        )
    if config.load_pattern:
        lines.append(f"Load pattern: {config.load_pattern}")

    if payload.oom_event_count > 0:
        lines.append(
            f"OOM events: {payload.oom_event_count} detected - "
            "critical memory issue requiring immediate attention"
        )
        for event in payload.error_metrics.oom_summary.events:
            parts = [p for p in (event.timestamp, event.title) if p]
            if event.host:
                parts.append(f"on {event.host}")
            lines.append("  - " + " ".join(parts))

    lines.append("Findings:")
    for i, finding in enumerate(verdict.findings, start=1):
        marker = f" [{finding.severity_contribution}]" if finding.severity_contribution != NONE else ""
        lines.append(f"  {i}. {finding.text}{marker}")

    if verdict.recommendations:
        lines.append("Recommendations:")
        for rec in verdict.recommendations:
            lines.append(f"  - {rec}")

    return "\n".join(lines)
