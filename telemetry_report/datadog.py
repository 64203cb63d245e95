"""Collect endpoint, container and error telemetry from the Datadog API."""

import logging
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from telemetry_report.aggregates import MEAN, aggregate, build_summaries
from telemetry_report.config import DatadogSettings
from telemetry_report.models import ResourceSummary
from telemetry_report.restarts import MalformedSeriesError, parse_restart_series

logger = logging.getLogger(__name__)


class DatadogAPIError(Exception):
    """Raised when the Datadog API cannot be reached or keeps failing."""


_TRACE_METRICS = {
    "fastapi": "trace.fastapi.request",
    "express": "trace.express.request",
}

_OOM_TITLE_MARKERS = ("out of memory", "oom", "memory")
_OOM_TEXT_MARKERS = ("out of memory", "oomkilled")
_MAX_LOG_MESSAGES = 20
_MESSAGE_CHARS = 100


def endpoint_queries(framework: str, service: str, environment: str) -> Dict[str, str]:
    """Per-resource trace queries for the endpoint table."""
    metric = _TRACE_METRICS[framework]
    scope = f"{{env:{environment},service:{service}}}"
    return {
        "requests": f"sum:{metric}.hits{scope} by {{resource_name}}.as_count()",
        "rate": f"sum:{metric}.hits{scope} by {{resource_name}}.as_rate()",
        "p95_latency": f"p95:{metric}{scope} by {{resource_name,service}}",
        "p99_latency": f"p99:{metric}{scope} by {{resource_name,service}}",
        "errors": f"sum:{metric}.errors{scope} by {{resource_name}}.as_count()",
    }


def error_queries(framework: str, service: str, environment: str) -> Dict[str, str]:
    """Service-wide trace error and hit totals."""
    metric = _TRACE_METRICS[framework]
    scope = f"{{env:{environment},service:{service}}}"
    return {
        "errors": f"sum:{metric}.errors{scope}.as_count()",
        "requests": f"sum:{metric}.hits{scope}.as_count()",
    }


def error_log_queries(service: str, environment: str) -> List[str]:
    """Log search queries for error logs, tried in order until one matches."""
    return [
        f"service:{service} env:{environment} status:error",
        f"service:{service} level:error",
        f"@service:{service} @env:{environment} status:error",
        f"service:{service} status:error OR level:error",
    ]


def container_queries(service: str, environment: str) -> Dict[str, str]:
    """Per-pod Kubernetes queries for restarts and resource usage."""
    scope = f"{{env:{environment},service:{service}}}"
    return {
        "restarts": f"max:kubernetes.containers.restarts{scope} by {{pod_name}}",
        "memory_pct": f"avg:kubernetes.memory.usage_pct{scope} by {{pod_name}}",
        "cpu_usage": f"avg:kubernetes.cpu.usage.total{scope} by {{pod_name}}",
        "cpu_limit": f"avg:kubernetes.cpu.limits{scope} by {{pod_name}}",
    }


class DatadogClient:
    """Thin synchronous client for metric, log and event queries with retry.

    Args:
        settings: Credentials, endpoint and retry settings.
        client: Optional preconfigured httpx.Client (used by tests).
        sleep: Function used to wait between attempts.
    """

    def __init__(
        self,
        settings: DatadogSettings,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def query(self, metric_query: str, from_s: int, to_s: int) -> dict:
        """Run one metric query, retrying with exponential backoff.

        Raises:
            DatadogAPIError: If credentials are missing or every attempt fails.
        """
        params = {"query": metric_query, "from": from_s, "to": to_s}
        return self._get_json(self.settings.query_url, params, f"query {metric_query}")

    def search_logs(
        self,
        log_query: str,
        start: datetime,
        end: datetime,
        limit: int = 1000,
        max_pages: int = 10,
    ) -> List[dict]:
        """Search log events in a window, following page cursors.

        Returns:
            Up to ``limit`` raw log events, newest first.

        Raises:
            DatadogAPIError: If credentials are missing or a page keeps failing.
        """
        params = {
            "filter[query]": log_query,
            "filter[from]": start.isoformat(),
            "filter[to]": end.isoformat(),
            "page[limit]": min(limit, 1000),
            "sort": "-timestamp",
        }
        logs: List[dict] = []
        for _ in range(max_pages):
            data = self._get_json(self.settings.logs_url, params, f"log search {log_query}")
            logs.extend(data.get("data") or [])
            cursor = ((data.get("meta") or {}).get("page") or {}).get("after")
            if not cursor or len(logs) >= limit:
                break
            params["page[cursor]"] = cursor
        return logs[:limit]

    def events(self, service: str, from_s: int, to_s: int) -> List[dict]:
        """Events tagged with the service in a window."""
        params = {"start": from_s, "end": to_s, "tags": f"service:{service}", "priority": "all"}
        data = self._get_json(self.settings.events_url, params, f"events for {service}")
        return data.get("events") or []

    def _get_json(self, url: str, params: Dict[str, Any], label: str) -> dict:
        self._ensure_ready()
        headers = {
            "DD-API-KEY": self.settings.api_key,
            "DD-APPLICATION-KEY": self.settings.app_key,
        }

        attempts = self.settings.max_attempts
        last_error = None
        for attempt in range(attempts):
            try:
                resp = self._http().get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.settings.timeout_seconds,
                )
                resp.raise_for_status()
                data = resp.json()
                if not isinstance(data, dict):
                    raise ValueError(f"expected a JSON object, got {type(data).__name__}")
                return data
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                if attempt == attempts - 1:
                    break
                delay = self.settings.backoff_seconds * 2 ** attempt
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    label, attempt + 1, attempts, exc, delay,
                )
                self._sleep(delay)

        raise DatadogAPIError(
            f"{label} failed after {attempts} attempt(s): {last_error}"
        ) from last_error

    def fetch_payload(self, service: str, environment: str, start: datetime, end: datetime) -> dict:
        """Collect a raw report payload for one service and window.

        A query that keeps failing leaves its part of the payload empty
        instead of aborting the collection.

        Returns:
            A mapping in the shape accepted by loader.build_payload.
        """
        self._ensure_ready()
        from_s, to_s = int(start.timestamp()), int(end.timestamp())
        logger.info("collecting %s (%s) from %s to %s", service, environment, start, end)

        queries = endpoint_queries(self.settings.trace_framework, service, environment)
        results = {name: self._query_or_none(q, from_s, to_s) for name, q in queries.items()}
        summaries = build_summaries(results, to_s - from_s)

        payload = {
            "service": service,
            "environment": environment,
            "timeRange": {"from": start.isoformat(), "to": end.isoformat()},
            "metrics": [_summary_row(s) for s in summaries],
        }

        container = {
            name: self._query_or_none(q, from_s, to_s)
            for name, q in container_queries(service, environment).items()
        }
        pod_metrics = _pod_metrics(container, from_s * 1000, to_s * 1000)
        if pod_metrics is not None:
            payload["podMetrics"] = pod_metrics

        error_metrics = self.fetch_error_metrics(service, environment, start, end)
        if error_metrics:
            payload["errorMetrics"] = error_metrics
        return payload

    def fetch_error_metrics(self, service: str, environment: str, start: datetime, end: datetime) -> dict:
        """Collect log, trace and out-of-memory error summaries.

        Each summary is left out when its requests keep failing.

        Returns:
            A mapping with any of ``logSummary``, ``traceSummary`` and
            ``oomSummary``, in the shape accepted by loader.build_payload.
        """
        self._ensure_ready()
        from_s, to_s = int(start.timestamp()), int(end.timestamp())
        error_metrics = {}

        log_summary = self._log_summary(service, environment, start, end)
        if log_summary is not None:
            error_metrics["logSummary"] = log_summary

        totals = {
            name: self._query_or_none(q, from_s, to_s)
            for name, q in error_queries(self.settings.trace_framework, service, environment).items()
        }
        if any(v is not None for v in totals.values()):
            errors = _series_total(totals["errors"])
            requests = _series_total(totals["requests"])
            error_metrics["traceSummary"] = {
                "totalErrors": round(errors),
                "totalRequests": round(requests),
                "errorPercentage": round(errors / requests * 100, 2) if requests else 0.0,
            }

        try:
            events = self.events(service, from_s, to_s)
        except DatadogAPIError as exc:
            logger.warning("%s", exc)
        else:
            error_metrics["oomSummary"] = summarize_oom_events(events)
        return error_metrics

    def _log_summary(self, service: str, environment: str, start: datetime, end: datetime) -> Optional[dict]:
        searched = False
        for log_query in error_log_queries(service, environment):
            try:
                logs = self.search_logs(log_query, start, end)
            except DatadogAPIError as exc:
                logger.warning("%s", exc)
                continue
            searched = True
            if logs:
                logger.debug("%d error logs for %s", len(logs), log_query)
                return summarize_error_logs(logs, log_query)
        if not searched:
            return None
        return summarize_error_logs([], None)

    def _query_or_none(self, metric_query: str, from_s: int, to_s: int) -> Optional[dict]:
        try:
            data = self.query(metric_query, from_s, to_s)
        except DatadogAPIError as exc:
            logger.warning("%s", exc)
            return None
        logger.debug("got %d series for %s", len(data.get("series") or []), metric_query)
        return data

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client()
        return self._client

    def _ensure_ready(self) -> None:
        missing = []
        if not self.settings.api_key:
            missing.append("DD_API_KEY")
        if not self.settings.app_key:
            missing.append("DD_APP_KEY")
        if missing:
            raise DatadogAPIError(f"Missing environment variable(s): {', '.join(missing)}")


def _summary_row(summary: ResourceSummary) -> dict:
    return {
        "resource_name": summary.resource_name,
        "requests": summary.requests,
        "p95_latency": f"{summary.p95_ms:.1f} ms" if summary.p95_ms is not None else "N/A",
        "p99_latency": f"{summary.p99_ms:.1f} ms" if summary.p99_ms is not None else "N/A",
        "rate": f"{summary.rate_hits_per_sec:.2f} hits/s",
        "errors": summary.error_count,
        "error_rate": f"{summary.error_rate_pct:.2f}",
    }


def _avg_and_peak(response: Optional[dict], tag: str = "pod_name") -> Dict[str, Tuple[float, float]]:
    out = {}
    for series in (response or {}).get("series") or []:
        scope = series.get("scope") or ""
        name = _tag_value(scope, tag)
        values = [p[1] for p in series.get("pointlist") or [] if len(p) > 1 and p[1] is not None]
        if name and values:
            out[name] = (aggregate(values, MEAN), max(values))
    return out


def _tag_value(scope: str, tag: str) -> Optional[str]:
    for part in scope.split(","):
        key, _, value = part.strip().partition(":")
        if key == tag and value:
            return value
    return None


def _pod_metrics(results: Dict[str, Optional[dict]], from_ms: int, to_ms: int) -> Optional[dict]:
    if not any(results.values()):
        return None

    restart_series = (results.get("restarts") or {}).get("series") or []
    restarts = {}
    for series in restart_series:
        try:
            event = parse_restart_series(series)
        except MalformedSeriesError as exc:
            logger.warning("skipped restart series: %s", exc)
            continue
        restarts[event.entity_name] = event.restart_count

    memory = _avg_and_peak(results.get("memory_pct"))
    cpu_usage = _avg_and_peak(results.get("cpu_usage"))
    cpu_limit = _avg_and_peak(results.get("cpu_limit"))

    pods: List[dict] = []
    for name in sorted(set(restarts) | set(memory) | set(cpu_usage)):
        pod = {"podName": name, "restarts": restarts.get(name, 0)}
        if name in memory:
            avg, peak = memory[name]
            pod["avgMemoryPct"] = avg * 100
            pod["maxMemoryPct"] = peak * 100
        limit = cpu_limit.get(name, (0.0, 0.0))[0]
        if name in cpu_usage and limit > 0:
            avg, peak = cpu_usage[name]
            pod["avgCpuPct"] = avg / 1e9 / limit * 100
            pod["maxCpuPct"] = peak / 1e9 / limit * 100
        pods.append(pod)

    summary = {}
    for key in ("CpuPct", "MemoryPct"):
        averages = [p[f"avg{key}"] for p in pods if f"avg{key}" in p]
        peaks = [p[f"max{key}"] for p in pods if f"max{key}" in p]
        if averages:
            summary[f"avg{key}"] = aggregate(averages, MEAN)
            summary[f"max{key}"] = max(peaks)

    pod_metrics = {"podMetrics": pods, "summary": summary}
    if restart_series:
        pod_metrics["timeSeries"] = {
            "restarts": {"series": restart_series, "from_date": from_ms, "to_date": to_ms},
        }
    return pod_metrics


def summarize_error_logs(logs: List[dict], matched_query: Optional[str]) -> dict:
    """Count error logs by message, most frequent first.

    Messages are cut to 100 characters before counting, and only the
    20 most frequent are kept.
    """
    counts = Counter(_log_message(log) for log in logs)
    return {
        "totalLogErrors": len(logs),
        "successfulQuery": matched_query,
        "errorsByMessage": [
            {"message": message, "errorCount": count}
            for message, count in counts.most_common(_MAX_LOG_MESSAGES)
        ],
    }


def is_oom_event(event: dict) -> bool:
    title = str(event.get("title") or "").lower()
    text = str(event.get("text") or "").lower()
    return any(m in title for m in _OOM_TITLE_MARKERS) or any(m in text for m in _OOM_TEXT_MARKERS)


def summarize_oom_events(events: List[dict]) -> dict:
    """Keep the out-of-memory events from a service's event stream."""
    details = []
    for event in events:
        if not isinstance(event, dict) or not is_oom_event(event):
            continue
        happened = event.get("date_happened")
        details.append({
            "timestamp": (
                datetime.fromtimestamp(happened, tz=timezone.utc).isoformat()
                if isinstance(happened, (int, float)) else None
            ),
            "title": event.get("title"),
            "text": event.get("text"),
            "priority": event.get("priority"),
            "alertType": event.get("alert_type"),
            "host": event.get("host"),
            "tags": event.get("tags") or [],
        })
    return {"totalOOMEvents": len(details), "oomEventDetails": details}


def _log_message(log: dict) -> str:
    if not isinstance(log, dict):
        return "No message"
    attributes = log.get("attributes") or {}
    custom = attributes.get("attributes") or {}
    error = custom.get("error")
    message = (
        custom.get("message")
        or (error.get("message") if isinstance(error, dict) else None)
        or attributes.get("message")
        or "No message"
    )
    return str(message)[:_MESSAGE_CHARS]


def _series_total(response: Optional[dict]) -> float:
    total = 0.0
    for series in (response or {}).get("series") or []:
        total += sum(p[1] for p in series.get("pointlist") or [] if len(p) > 1 and p[1] is not None)
    return total
