"""Turn a normalized report payload into categorized findings and an overall verdict."""

from typing import Dict, List, Optional

from telemetry_report.aggregates import rate
from telemetry_report.models import (
    CRITICAL,
    ERRORS,
    GOOD,
    LATENCY,
    LOG_ERRORS,
    NONE,
    RESOURCE_UTILIZATION,
    RESTARTS,
    SEVERITY_RANK,
    THROUGHPUT,
    WARNING,
    Finding,
    PodMetric,
    ReportConfig,
    ReportPayload,
    ReportVerdict,
    RestartClassification,
)
from telemetry_report.restarts import classify_restarts, restarted_in_window, select_cause


def merge_severity(current: str, new: str) -> str:
    """Return the more severe of two levels; a level is never lowered."""
    if SEVERITY_RANK[new] > SEVERITY_RANK[current]:
        return new
    return current


def generate_verdict(payload: ReportPayload, config: Optional[ReportConfig] = None) -> ReportVerdict:
    """Evaluate a report payload and produce findings, recommendations, and status.

    Findings are emitted in a fixed order: restarts, high latency, endpoint
    errors, application log errors, throughput, resource utilization. Optional
    sections that are absent skip their findings.

    Args:
        payload: Normalized payload from the loader.
        config: Thresholds and display settings. Defaults apply when omitted.

    Returns:
        A ReportVerdict. The same payload and config always give the same
        verdict.
    """
    config = config or ReportConfig()
    findings: List[Finding] = []
    recommendations: List[str] = []
    status = GOOD

    # Restarts (window-only)
    timings = _restart_timings(payload, config)
    restarted = _restarted_pods(payload, timings)
    total_restarts = sum(p.restarts for p in restarted)
    if total_restarts > 0:
        level = NONE
        if total_restarts >= config.restart_critical_count:
            level = CRITICAL
        elif total_restarts >= config.restart_warning_count:
            level = WARNING
        findings.append(Finding(
            RESTARTS,
            f"Pod Restarts Detected: {total_restarts} restart(s) during monitoring window "
            f"across {len(restarted)} pod(s)",
            level,
        ))
        for pod in restarted:
            plural = "s" if pod.restarts > 1 else ""
            findings.append(Finding(
                RESTARTS,
                f"{pod.pod_name} - {pod.restarts} restart{plural} (At: {timings[pod.pod_name].label_text})",
            ))

        pod_metrics = payload.pod_metrics
        cause = select_cause(
            restarted,
            pod_metrics.memory_pct_by_pod(),
            pod_metrics.cpu_pct_by_pod(),
            payload.log_error_count,
            config,
        )
        findings.append(Finding(RESTARTS, cause))

        if payload.log_error_count > 0:
            recommendations.append(
                "Application errors causing restarts: review application logs "
                "and implement proper error handling"
            )
        if any(p.restarts >= config.frequent_restart_count for p in restarted):
            recommendations.append(
                "Frequent restarts detected: check health check configurations and resource limits"
            )
        if level != NONE:
            status = merge_severity(status, level)

    # High p95 latency
    threshold = config.latency_threshold_ms
    slow = [r for r in payload.resources if r.p95_ms is not None and r.p95_ms > threshold]
    if slow:
        p95_values = ", ".join(f"{r.p95_ms / 1000:.2f}s" for r in slow)
        names = ", ".join(r.resource_name for r in slow)
        findings.append(Finding(
            LATENCY,
            f"High P95 Latency Detected: {len(slow)} endpoint(s) with P95 > {threshold / 1000:g}s "
            f"(p95: {p95_values}). Endpoints: {names}",
            WARNING,
        ))
        recommendations.append(
            "Investigate slow endpoints for database query optimization, "
            "external API calls, or inefficient algorithms"
        )
        status = merge_severity(status, WARNING)

    # Endpoint errors
    failing = [r for r in payload.resources if r.error_count > 0]
    if failing:
        total_errors = sum(r.error_count for r in failing)
        trace_errors = 0
        if payload.error_metrics is not None and payload.error_metrics.trace_summary is not None:
            trace_errors = payload.error_metrics.trace_summary.total_errors
        findings.append(Finding(
            ERRORS,
            f"Errors Found: {total_errors} total errors "
            f"({total_errors} endpoint errors, {trace_errors} trace errors)",
            WARNING,
        ))
        worst = max(failing, key=lambda r: r.error_rate_pct)
        if worst.error_rate_pct > 0:
            findings.append(Finding(
                ERRORS,
                f"Most Common Error: {worst.error_rate_pct:.2f}% error rate "
                f"on {worst.resource_name} endpoint",
            ))
        status = merge_severity(status, WARNING)

    # Application log errors
    if payload.log_error_count > 0:
        findings.append(Finding(
            LOG_ERRORS,
            f"Application Errors: {payload.log_error_count} log errors detected during monitoring window",
            WARNING,
        ))
        top = payload.error_metrics.log_summary.top_messages
        if top:
            findings.append(Finding(
                LOG_ERRORS,
                f'Most Common Log Error: "{top[0].message}" occurred {top[0].count} times',
            ))
        status = merge_severity(status, WARNING)

    # Throughput (informational)
    total_requests = sum(r.requests for r in payload.resources)
    if total_requests > 0:
        minutes = _window_minutes(payload, config)
        per_minute = rate(total_requests, minutes)
        findings.append(Finding(
            THROUGHPUT,
            f"Throughput: {total_requests} total requests over {minutes:.0f} minutes "
            f"(avg: {per_minute:.2f} req/min)",
        ))

    # Resource utilization
    usage = payload.pod_metrics.summary if payload.pod_metrics is not None else None
    if usage is not None:
        parts = []
        if usage.avg_cpu_pct is not None or usage.max_cpu_pct is not None:
            parts.append("CPU: " + _avg_peak(usage.avg_cpu_pct, usage.max_cpu_pct))
        if usage.avg_memory_pct is not None or usage.max_memory_pct is not None:
            parts.append("Memory: " + _avg_peak(usage.avg_memory_pct, usage.max_memory_pct))
        if parts:
            peak = config.resource_peak_pct
            cpu_hot = usage.max_cpu_pct is not None and usage.max_cpu_pct > peak
            memory_hot = usage.max_memory_pct is not None and usage.max_memory_pct > peak
            findings.append(Finding(
                RESOURCE_UTILIZATION,
                "Resource Utilization: " + " | ".join(parts),
                WARNING if cpu_hot or memory_hot else NONE,
            ))
            if cpu_hot:
                recommendations.append(
                    f"CPU usage peaked above {peak:g}% - consider increasing CPU limits "
                    "or horizontal scaling"
                )
            if memory_hot:
                recommendations.append(
                    f"Memory usage peaked above {peak:g}% - monitor for potential memory "
                    "pressure and consider increasing limits"
                )
            if cpu_hot or memory_hot:
                status = merge_severity(status, WARNING)

    if status == GOOD:
        findings.append(Finding(RESOURCE_UTILIZATION, "All metrics within acceptable thresholds"))
        recommendations.append("Continue monitoring performance trends over time")
        recommendations.append("Establish this test as a baseline for future regression testing")

    return ReportVerdict(overall_status=status, findings=findings, recommendations=recommendations)


def summarize(payload: ReportPayload, config: Optional[ReportConfig] = None) -> List[str]:
    """Short one-line observations suitable for a chat notification."""
    config = config or ReportConfig()
    observations = []

    restarted = _restarted_pods(payload, _restart_timings(payload, config))
    total_restarts = sum(p.restarts for p in restarted)
    if total_restarts > 0:
        observations.append(
            f"Pod Restarts: {total_restarts} restart(s) across {len(restarted)} pod(s) "
            "during monitoring window"
        )

    slow = [
        r for r in payload.resources
        if r.p95_ms is not None and r.p95_ms > config.latency_threshold_ms
    ]
    if slow:
        worst = max(slow, key=lambda r: r.p95_ms)
        observations.append(
            f"Performance Issues: High P95 latency ({worst.p95_ms / 1000:.1f}+ seconds) "
            f"on {worst.resource_name} endpoint"
        )

    erroring = [r for r in payload.resources if r.error_rate_pct > 0]
    if erroring:
        worst = max(erroring, key=lambda r: r.error_rate_pct)
        observations.append(
            f"Error Rate: {worst.error_rate_pct:.2f}% error rate on {worst.resource_name} "
            f"endpoint with {worst.error_count} errors"
        )

    if payload.log_error_count > 0:
        observations.append(
            f"Application Errors: {payload.log_error_count} log errors detected during monitoring window"
        )

    total_requests = sum(r.requests for r in payload.resources)
    if total_requests > 0:
        minutes = _window_minutes(payload, config)
        observations.append(
            f"Throughput: {total_requests} total requests over {minutes:.0f} minutes "
            f"(avg: {rate(total_requests, minutes):.2f} req/min)"
        )

    return observations


def _restart_timings(payload: ReportPayload, config: ReportConfig) -> Dict[str, RestartClassification]:
    pod_metrics = payload.pod_metrics
    if pod_metrics is None:
        return {}
    window_start = pod_metrics.window_start
    if window_start is None and payload.time_range is not None:
        window_start = payload.time_range.start
    return classify_restarts(pod_metrics.restart_events, window_start, config)


def _restarted_pods(
    payload: ReportPayload,
    timings: Dict[str, RestartClassification],
) -> List[PodMetric]:
    if payload.pod_metrics is None or not payload.pod_metrics.pods:
        return []
    return restarted_in_window(payload.pod_metrics.pods, timings)


def _window_minutes(payload: ReportPayload, config: ReportConfig) -> float:
    if payload.time_range is not None:
        return payload.time_range.minutes
    return config.default_window_minutes


def _avg_peak(avg: Optional[float], peak: Optional[float]) -> str:
    parts = []
    if avg is not None:
        parts.append(f"{avg:.2f}% avg")
    if peak is not None:
        parts.append(f"{peak:.2f}% peak")
    return ", ".join(parts)
