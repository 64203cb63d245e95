"""Classify container restarts against the report window and pick a likely cause."""

import re
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from telemetry_report.models import (
    MetricSample,
    PodMetric,
    ReportConfig,
    RestartClassification,
    RestartEvent,
)


class MalformedSeriesError(ValueError):
    """Raised when a restart time series cannot be attributed or has no data."""


_POD_NAME = re.compile(r"pod_name:([\w-]+)")


def parse_restart_series(raw: dict) -> RestartEvent:
    """Build a RestartEvent from one series of a restart-count query.

    Args:
        raw: A series mapping with an "expression" (or "scope") carrying a
            pod_name tag and a "pointlist" of [timestamp_ms, value] pairs.

    Returns:
        A RestartEvent whose restart_count is the highest value observed.

    Raises:
        MalformedSeriesError: If the pod name or the data points are missing.
    """
    if not isinstance(raw, dict):
        raise MalformedSeriesError("restart series must be a mapping")

    source = " ".join(str(raw.get(key) or "") for key in ("expression", "scope")).strip()
    match = _POD_NAME.search(source)
    if not match:
        raise MalformedSeriesError(f"no pod_name tag in restart series: {source!r}")
    pod_name = match.group(1)

    pointlist = raw.get("pointlist") or []
    if not isinstance(pointlist, (list, tuple)):
        raise MalformedSeriesError(f"pointlist for {pod_name} must be a list, got {pointlist!r}")

    timeline = []
    for point in pointlist:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            raise MalformedSeriesError(f"bad data point in restart series for {pod_name}: {point!r}")
        ts, value = point[0], point[1]
        try:
            timeline.append(MetricSample(
                timestamp=int(ts),
                value=float(value) if value is not None else None,
            ))
        except (TypeError, ValueError) as exc:
            raise MalformedSeriesError(
                f"non-numeric data point in restart series for {pod_name}: {point!r}"
            ) from exc

    values = [s.value for s in timeline if s.value is not None]
    if not values:
        raise MalformedSeriesError(f"restart series for {pod_name} has no data points")

    return RestartEvent(entity_name=pod_name, restart_count=int(max(values)), timeline=timeline)


def classify_restart(
    event: RestartEvent,
    window_start: Optional[datetime],
    config: Optional[ReportConfig] = None,
) -> Optional[RestartClassification]:
    """Decide whether an entity's restart counter moved inside the window.

    One forward pass over the samples. The latest increase above the running
    maximum marks a restart during the window. A counter that is already
    non-zero at the first sample but never rises again restarted before the
    window. A counter that stays at zero yields None.

    A single-sample series can never show an increase, so a restart exactly
    at the window start reads as "before window".
    """
    config = config or ReportConfig()
    samples = [s for s in event.timeline if s.value is not None]
    if not samples:
        return None

    start_value = samples[0].value
    max_value = start_value
    latest_increase = None
    for sample in samples:
        if sample.value > max_value:
            latest_increase = sample.timestamp
            max_value = sample.value

    if latest_increase is not None:
        return RestartClassification(
            entity_name=event.entity_name,
            occurred_during_window=True,
            label_text=format_timestamp(_from_epoch_ms(latest_increase), config),
        )
    if start_value > 0:
        start = window_start or _from_epoch_ms(samples[0].timestamp)
        return RestartClassification(
            entity_name=event.entity_name,
            occurred_during_window=False,
            label_text="Before " + format_timestamp(start, config, seconds=False),
        )
    return None


def classify_restarts(
    events: Iterable[RestartEvent],
    window_start: Optional[datetime],
    config: Optional[ReportConfig] = None,
) -> Dict[str, RestartClassification]:
    """Classify every entity; entities with no restart record are absent."""
    classifications = {}
    for event in events:
        result = classify_restart(event, window_start, config)
        if result is not None:
            classifications[event.entity_name] = result
    return classifications


def restarted_in_window(
    pods: Iterable[PodMetric],
    classifications: Mapping[str, RestartClassification],
) -> List[PodMetric]:
    """Pods whose restarts count toward the report.

    A pod counts only when it has restarts and its classification exists and
    places the restart inside the window.
    """
    counted = []
    for pod in pods:
        timing = classifications.get(pod.pod_name)
        if pod.restarts > 0 and timing is not None and timing.occurred_during_window:
            counted.append(pod)
    return counted


def select_cause(
    restarted: Sequence[PodMetric],
    memory_pct_by_entity: Mapping[str, float],
    cpu_pct_by_entity: Mapping[str, float],
    log_error_count: int,
    config: Optional[ReportConfig] = None,
) -> str:
    """Pick the single most likely explanation for a set of restarts.

    Rules are checked in priority order and the first match wins:
    memory pressure, error correlation, restart frequency, spread across
    entities, then a default. CPU is carried as a correlated signal but no
    rule keys off it yet.
    """
    config = config or ReportConfig()
    total = sum(p.restarts for p in restarted)

    if any(memory_pct_by_entity.get(p.pod_name, 0) > config.oom_memory_pct for p in restarted):
        return "High memory usage detected - likely OOM (Out of Memory) kill"
    if log_error_count > 0 and total > 1:
        return (
            f"Correlated with {log_error_count} application errors - "
            "likely application-level failure"
        )
    if total >= config.frequent_restart_count:
        return "Frequent restarts suggest health check failures or application instability"
    if len(restarted) > 1:
        return "Multiple pods affected - indicates service-level instability"
    return "Monitor for patterns - may be related to deployment updates or transient issues"


def format_timestamp(moment: datetime, config: Optional[ReportConfig] = None, seconds: bool = True) -> str:
    """Render a moment in the display timezone, e.g. "Jan 9, 03:10:00 PM EST"."""
    config = config or ReportConfig()
    local = moment.astimezone(ZoneInfo(config.display_timezone))
    clock = local.strftime("%I:%M:%S %p" if seconds else "%I:%M %p")
    return f"{local.strftime('%b')} {local.day}, {clock} {config.timezone_label}"


def _from_epoch_ms(ts: int) -> datetime:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
