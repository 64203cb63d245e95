"""Load and normalize report payload files (JSON or YAML) into typed records."""

import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import yaml

from telemetry_report.aggregates import error_rate_pct
from telemetry_report.models import (
    ErrorMetrics,
    LogMessage,
    LogSummary,
    OOMEvent,
    OOMSummary,
    PodMetric,
    PodMetrics,
    ReportPayload,
    ResourceSummary,
    ResourceUsage,
    TimeRange,
    TraceSummary,
)
from telemetry_report.restarts import MalformedSeriesError, parse_restart_series

logger = logging.getLogger(__name__)


class PayloadValidationError(Exception):
    """Raised when a report payload fails validation."""


# Placeholders the metrics collector writes for "no value".
_PLACEHOLDERS = {"", "n/a", "na", "-", "—", "none", "null"}
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def load_payload(path: str) -> Tuple[ReportPayload, List[str]]:
    """Load a report payload from a JSON or YAML file.

    Args:
        path: Path to the payload file.

    Returns:
        A tuple of (ReportPayload, warnings) where warnings describe values
        that were dropped or could not be parsed.

    Raises:
        PayloadValidationError: If the file is missing, unreadable, or invalid.
    """
    if not os.path.isfile(path):
        raise PayloadValidationError(f"payload file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r") as f:
            if ext in (".yaml", ".yml"):
                raw = yaml.safe_load(f)
            elif ext == ".json":
                raw = json.load(f)
            else:
                raise PayloadValidationError(
                    f"unsupported file extension: {ext} (expected .json, .yaml, or .yml)"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise PayloadValidationError(f"failed to parse {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise PayloadValidationError("payload must be a mapping/object at the top level")

    return build_payload(raw)


def build_payload(raw: dict) -> Tuple[ReportPayload, List[str]]:
    """Validate a raw payload mapping and convert it into a ReportPayload."""
    errors: List[str] = []
    warnings: List[str] = []

    service = raw.get("service")
    if not service or not isinstance(service, str):
        errors.append("'service' is required and must be a non-empty string")

    environment = raw.get("environment", "")
    if not isinstance(environment, str):
        errors.append("'environment' must be a string")
        environment = ""

    time_range = _parse_time_range(raw.get("timeRange"), errors)
    resources = _parse_metrics(raw.get("metrics", []), errors, warnings)
    error_metrics = _parse_error_metrics(raw.get("errorMetrics"), warnings)
    pod_metrics = _parse_pod_metrics(raw.get("podMetrics"), time_range, warnings)

    if errors:
        raise PayloadValidationError(
            "payload validation failed:\n  - " + "\n  - ".join(errors)
        )

    for w in warnings:
        logger.debug("%s: %s", service, w)

    return ReportPayload(
        service=service,
        environment=environment,
        time_range=time_range,
        resources=resources,
        error_metrics=error_metrics,
        pod_metrics=pod_metrics,
    ), warnings


def parse_number(value: Any) -> Optional[float]:
    """Read a number that may carry a unit suffix ("1500 ms", "2 hits/s").

    Returns None for null values and "no value" placeholders.

    Raises:
        ValueError: If the value holds no number.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text.lower() in _PLACEHOLDERS:
        return None
    match = _NUMBER.search(text.replace(",", ""))
    if not match:
        raise ValueError(f"no number in {value!r}")
    return float(match.group(0))


def parse_time(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str):
        raise ValueError(f"not a timestamp: {value!r}")
    text = value.strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_time_range(raw: Any, errors: List[str]) -> Optional[TimeRange]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        errors.append("'timeRange' must be a mapping with 'from' and 'to'")
        return None
    try:
        start = parse_time(raw.get("from"))
        end = parse_time(raw.get("to"))
    except ValueError as exc:
        errors.append(f"'timeRange' has an invalid timestamp: {exc}")
        return None
    if end <= start:
        errors.append("'timeRange.to' must be later than 'timeRange.from'")
        return None
    return TimeRange(start=start, end=end)


def _parse_metrics(raw: Any, errors: List[str], warnings: List[str]) -> List[ResourceSummary]:
    if not isinstance(raw, list):
        errors.append("'metrics' must be a list")
        return []

    resources = []
    for i, row in enumerate(raw):
        if not isinstance(row, dict):
            errors.append(f"metrics[{i}] must be a mapping")
            continue
        name = row.get("resource_name")
        if not name:
            errors.append(f"metrics[{i}].resource_name is required")
            continue

        fields = {}
        for key in ("requests", "errors", "p95_latency", "p99_latency", "rate"):
            try:
                fields[key] = parse_number(row.get(key))
            except ValueError:
                warnings.append(f"non-numeric value for {name}.{key}: {row.get(key)!r}")
                fields[key] = None

        requests = int(fields["requests"] or 0)
        error_count = int(fields["errors"] or 0)
        resources.append(ResourceSummary(
            resource_name=str(name),
            requests=requests,
            p95_ms=fields["p95_latency"],
            p99_ms=fields["p99_latency"],
            rate_hits_per_sec=fields["rate"] or 0.0,
            error_count=error_count,
            error_rate_pct=error_rate_pct(error_count, requests),
        ))
    return resources


def _parse_error_metrics(raw: Any, warnings: List[str]) -> Optional[ErrorMetrics]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        warnings.append("'errorMetrics' is not a mapping; skipping error findings")
        return None

    log_summary = None
    log_raw = raw.get("logSummary")
    if isinstance(log_raw, dict):
        key = "topMessages" if log_raw.get("topMessages") else "errorsByMessage"
        messages_raw = _list_or_empty(log_raw.get(key), f"logSummary.{key}", warnings)
        messages = []
        for entry in messages_raw:
            if not isinstance(entry, dict) or not entry.get("message"):
                continue
            message = str(entry["message"])
            if message.startswith("No message"):
                continue
            count = entry.get("count", entry.get("errorCount", 0))
            messages.append(LogMessage(message=message, count=int(_number_or_zero(count, warnings, "log count"))))
        if key == "errorsByMessage":
            # stable sort keeps source order among equal counts
            messages.sort(key=lambda m: m.count, reverse=True)
        log_summary = LogSummary(
            total_log_errors=int(_number_or_zero(log_raw.get("totalLogErrors"), warnings, "totalLogErrors")),
            top_messages=messages,
        )

    trace_summary = None
    trace_raw = raw.get("traceSummary")
    if isinstance(trace_raw, dict):
        trace_summary = TraceSummary(
            total_errors=int(_number_or_zero(trace_raw.get("totalErrors"), warnings, "totalErrors")),
            error_percentage=_number_or_zero(trace_raw.get("errorPercentage"), warnings, "errorPercentage"),
        )

    oom_summary = None
    oom_raw = raw.get("oomSummary")
    if isinstance(oom_raw, dict):
        details = []
        for entry in _list_or_empty(oom_raw.get("oomEventDetails"), "oomSummary.oomEventDetails", warnings):
            if not isinstance(entry, dict):
                continue
            details.append(OOMEvent(
                timestamp=str(entry.get("timestamp") or ""),
                title=str(entry.get("title") or ""),
                host=entry.get("host") or None,
            ))
        oom_summary = OOMSummary(
            total_oom_events=int(_number_or_zero(oom_raw.get("totalOOMEvents"), warnings, "totalOOMEvents")),
            events=details,
        )

    return ErrorMetrics(log_summary=log_summary, trace_summary=trace_summary, oom_summary=oom_summary)


def _parse_pod_metrics(raw: Any, time_range: Optional[TimeRange], warnings: List[str]) -> Optional[PodMetrics]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        warnings.append("'podMetrics' is not a mapping; skipping pod findings")
        return None

    pods = []
    for entry in _list_or_empty(raw.get("podMetrics"), "podMetrics.podMetrics", warnings):
        if not isinstance(entry, dict) or not entry.get("podName"):
            warnings.append(f"pod entry without podName skipped: {entry!r}")
            continue
        pods.append(PodMetric(
            pod_name=str(entry["podName"]),
            restarts=int(_number_or_zero(entry.get("restarts"), warnings, "restarts")),
            avg_cpu_pct=_optional_number(entry.get("avgCpuPct"), warnings, "avgCpuPct"),
            max_cpu_pct=_optional_number(entry.get("maxCpuPct"), warnings, "maxCpuPct"),
            avg_memory_pct=_optional_number(entry.get("avgMemoryPct"), warnings, "avgMemoryPct"),
            max_memory_pct=_optional_number(entry.get("maxMemoryPct"), warnings, "maxMemoryPct"),
        ))

    summary = None
    summary_raw = raw.get("summary")
    if isinstance(summary_raw, dict):
        usage = ResourceUsage(
            avg_cpu_pct=_optional_number(summary_raw.get("avgCpuPct"), warnings, "avgCpuPct"),
            max_cpu_pct=_optional_number(summary_raw.get("maxCpuPct"), warnings, "maxCpuPct"),
            avg_memory_pct=_optional_number(summary_raw.get("avgMemoryPct"), warnings, "avgMemoryPct"),
            max_memory_pct=_optional_number(summary_raw.get("maxMemoryPct"), warnings, "maxMemoryPct"),
        )
        if any(v is not None for v in vars(usage).values()):
            summary = usage

    events = []
    window_start = time_range.start if time_range else None
    time_series = raw.get("timeSeries")
    restarts_raw = time_series.get("restarts") if isinstance(time_series, dict) else None
    if isinstance(restarts_raw, dict):
        for series in _list_or_empty(restarts_raw.get("series"), "timeSeries.restarts.series", warnings):
            try:
                events.append(parse_restart_series(series))
            except MalformedSeriesError as exc:
                warnings.append(f"skipped restart series: {exc}")
        if restarts_raw.get("from_date") is not None:
            try:
                window_start = parse_time(restarts_raw["from_date"])
            except ValueError:
                warnings.append(f"invalid restart window start: {restarts_raw['from_date']!r}")

    return PodMetrics(pods=pods, summary=summary, restart_events=events, window_start=window_start)


def _list_or_empty(value: Any, label: str, warnings: List[str]) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        warnings.append(f"'{label}' is not a list; skipped")
        return []
    return value


def _optional_number(value: Any, warnings: List[str], label: str) -> Optional[float]:
    try:
        return parse_number(value)
    except ValueError:
        warnings.append(f"non-numeric value for {label}: {value!r}")
        return None


def _number_or_zero(value: Any, warnings: List[str], label: str) -> float:
    number = _optional_number(value, warnings, label)
    return number if number is not None else 0.0
