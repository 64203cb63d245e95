"""Aggregate numeric samples and normalize counters into rates."""

import re
from typing import Dict, Iterable, List, Optional, Sequence

from telemetry_report.models import ResourceSummary


class EmptyInputError(ValueError):
    """Raised when an aggregate is requested over an empty sample set."""


class InvalidWindowError(ValueError):
    """Raised when a rate is requested over a non-positive time window."""


SUM = "sum"
MEAN = "mean"
P95 = "p95"
P99 = "p99"

_PERCENTILES = {P95: 0.95, P99: 0.99}


def aggregate(values: Sequence[float], kind: str) -> float:
    """Reduce a non-empty sequence of numbers to a single value.

    Args:
        values: Finite numbers; callers filter out nulls first.
        kind: One of "sum", "mean", "p95", "p99".

    Returns:
        The aggregate. Percentiles are nearest-rank selections, never
        interpolated, so the result is always one of the input values.

    Raises:
        EmptyInputError: If values is empty.
        ValueError: If kind is not recognized.
    """
    if not values:
        raise EmptyInputError(f"cannot compute {kind} of an empty sample set")

    if kind == SUM:
        return float(sum(values))
    if kind == MEAN:
        return float(sum(values)) / len(values)
    if kind in _PERCENTILES:
        return percentile(values, _PERCENTILES[kind])
    raise ValueError(f"unknown aggregation kind: {kind!r}")


def percentile(values: Sequence[float], fraction: float) -> float:
    """Nearest-rank (floor) percentile: sorted[floor(n * fraction)], clamped."""
    if not values:
        raise EmptyInputError("cannot compute a percentile of an empty sample set")
    ordered = sorted(values)
    index = int(len(ordered) * fraction)
    index = max(0, min(index, len(ordered) - 1))
    return float(ordered[index])


def median(values: Sequence[float]) -> float:
    if not values:
        raise EmptyInputError("cannot compute the median of an empty sample set")
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return float(ordered[mid])


def rate(total_count: float, window_seconds: float) -> float:
    """Convert a total over a window into a per-unit rate.

    The unit follows the window: pass seconds for hits/s, minutes for
    requests/minute.

    Raises:
        InvalidWindowError: If window_seconds <= 0.
    """
    if window_seconds <= 0:
        raise InvalidWindowError(f"time window must be positive, got {window_seconds}")
    return total_count / window_seconds


def mean_rate(per_bucket_rates: Sequence[float]) -> float:
    """Average of per-bucket rates.

    Not the same number as rate(sum(counts), window) for bursty traffic;
    the two are reported in different places and must not be mixed.
    """
    return aggregate(per_bucket_rates, MEAN)


def error_rate_pct(errors: float, requests: float) -> float:
    if requests > 0:
        return errors / requests * 100
    return 0.0


def extract_by_resource(
    response: Optional[dict],
    kind: str,
    tag: str = "resource_name",
    scale: float = 1.0,
) -> Dict[str, float]:
    """Reduce each series of a metrics query response to one value per tag.

    Args:
        response: Decoded /api/v1/query response (may be None).
        kind: Aggregation applied to each series' non-null points.
        tag: Scope tag whose value names the series.
        scale: Multiplier applied to the aggregate (e.g. 1000 for s -> ms).

    Returns:
        Mapping of tag value to aggregate. Series without any non-null
        points are left out.
    """
    if not response or not response.get("series"):
        return {}

    pattern = re.compile(re.escape(tag) + r":([^,}]+)")
    by_resource = {}
    for series in response["series"]:
        match = pattern.search(series.get("scope") or series.get("expression") or "")
        name = match.group(1) if match else "unknown"
        values = _non_null(series.get("pointlist") or [])
        if not values:
            continue
        by_resource[name] = aggregate(values, kind) * scale
    return by_resource


def build_summaries(results: Dict[str, Optional[dict]], window_seconds: float) -> List[ResourceSummary]:
    """Merge per-resource query results into summary rows.

    Args:
        results: Query responses keyed by "requests", "errors", "p95_latency",
            "p99_latency" and "rate" (any may be missing or None).
        window_seconds: Length of the report window.

    Returns:
        One ResourceSummary per resource seen in any result, busiest first.
    """
    requests = extract_by_resource(results.get("requests"), SUM)
    errors = extract_by_resource(results.get("errors"), SUM)
    p95 = extract_by_resource(results.get("p95_latency"), P95, scale=1000)
    p99 = extract_by_resource(results.get("p99_latency"), P99, scale=1000)
    rates = extract_by_resource(results.get("rate"), MEAN)

    names = set(requests) | set(errors) | set(p95) | set(p99) | set(rates)
    summaries = []
    for name in names:
        count = int(round(requests.get(name, 0)))
        error_count = int(round(errors.get(name, 0)))
        summaries.append(ResourceSummary(
            resource_name=name,
            requests=count,
            p95_ms=p95.get(name),
            p99_ms=p99.get(name),
            rate_hits_per_sec=rate(count, window_seconds),
            error_count=error_count,
            error_rate_pct=error_rate_pct(error_count, count),
            mean_sample_rate=rates.get(name),
        ))
    summaries.sort(key=lambda s: (-s.requests, s.resource_name))
    return summaries


def _non_null(pointlist: Iterable) -> List[float]:
    return [point[1] for point in pointlist if len(point) > 1 and point[1] is not None]
