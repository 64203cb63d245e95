"""Tests for finding generation and overall verdict status."""

import itertools
import os
from datetime import datetime, timezone

import pytest

from telemetry_report.findings import generate_verdict, merge_severity, summarize
from telemetry_report.loader import build_payload, load_payload
from telemetry_report.models import (
    CRITICAL,
    ERRORS,
    GOOD,
    LATENCY,
    LOG_ERRORS,
    NONE,
    RESOURCE_UTILIZATION,
    RESTARTS,
    THROUGHPUT,
    WARNING,
    MetricSample,
    PodMetric,
    PodMetrics,
    ReportConfig,
    ReportPayload,
    ResourceSummary,
    RestartEvent,
    TimeRange,
)
from telemetry_report.report import verdict_to_json


FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "..", "fixtures")

WINDOW = TimeRange(
    start=datetime(2025, 1, 9, 20, 0, tzinfo=timezone.utc),
    end=datetime(2025, 1, 9, 20, 30, tzinfo=timezone.utc),
)
T0 = 1736452800000


def _fixture(name):
    payload, _ = load_payload(os.path.join(FIXTURES_DIR, name))
    return payload


def _resource(name, p95_ms=100.0, requests=100, errors=0):
    return ResourceSummary(
        resource_name=name,
        requests=requests,
        p95_ms=p95_ms,
        p99_ms=None,
        rate_hits_per_sec=0.0,
        error_count=errors,
        error_rate_pct=errors / requests * 100 if requests else 0.0,
    )


def _restarting_pod(name, restarts):
    return PodMetric(name, restarts=restarts), RestartEvent(
        entity_name=name,
        restart_count=restarts,
        timeline=[MetricSample(T0, 0), MetricSample(T0 + 600000, restarts)],
    )


def _payload(resources=(), pods=()):
    pod_metrics = None
    if pods:
        pod_metrics = PodMetrics(
            pods=[p for p, _ in pods],
            restart_events=[e for _, e in pods],
            window_start=WINDOW.start,
        )
    return ReportPayload(
        service="orders-api",
        environment="staging",
        time_range=WINDOW,
        resources=list(resources),
        pod_metrics=pod_metrics,
    )


class TestMergeSeverity:
    def test_never_lowers(self):
        assert merge_severity(CRITICAL, WARNING) == CRITICAL
        assert merge_severity(WARNING, GOOD) == WARNING

    def test_raises(self):
        assert merge_severity(GOOD, WARNING) == WARNING
        assert merge_severity(WARNING, CRITICAL) == CRITICAL

    def test_order_independent(self):
        levels = [WARNING, CRITICAL, GOOD, WARNING]
        results = set()
        for order in itertools.permutations(levels):
            status = GOOD
            for level in order:
                status = merge_severity(status, level)
            results.add(status)
        assert results == {CRITICAL}


class TestSlowEndpoint:
    def test_single_latency_finding(self):
        verdict = generate_verdict(_fixture("payload-slow.json"))
        assert verdict.overall_status == WARNING

        latency = [f for f in verdict.findings if f.category == LATENCY]
        assert len(latency) == 1
        assert "GET /orders" in latency[0].text
        assert "1.50s" in latency[0].text
        assert latency[0].severity_contribution == WARNING

        categories = {f.category for f in verdict.findings}
        assert RESTARTS not in categories
        assert ERRORS not in categories
        assert RESOURCE_UTILIZATION not in categories
        assert any("Investigate slow endpoints" in r for r in verdict.recommendations)

    def test_latency_text(self):
        verdict = generate_verdict(_fixture("payload-slow.json"))
        assert verdict.findings[0].text == (
            "High P95 Latency Detected: 1 endpoint(s) with P95 > 1s (p95: 1.50s). "
            "Endpoints: GET /orders"
        )

    def test_throughput_is_informational(self):
        verdict = generate_verdict(_fixture("payload-slow.json"))
        throughput = [f for f in verdict.findings if f.category == THROUGHPUT]
        assert throughput[0].text == (
            "Throughput: 1000 total requests over 30 minutes (avg: 33.33 req/min)"
        )
        assert throughput[0].severity_contribution == NONE

    def test_threshold_is_strict(self):
        payload = _payload([_resource("GET /orders", p95_ms=1000.0)])
        verdict = generate_verdict(payload)
        assert verdict.overall_status == GOOD

    def test_missing_p95_is_not_slow(self):
        payload = _payload([_resource("GET /orders", p95_ms=None)])
        assert generate_verdict(payload).overall_status == GOOD

    def test_threshold_from_config(self):
        config = ReportConfig(latency_threshold_ms=2000.0)
        verdict = generate_verdict(_fixture("payload-slow.json"), config)
        assert verdict.overall_status == GOOD


class TestIncidentReport:
    def test_findings_in_order(self):
        verdict = generate_verdict(_fixture("payload-incident.yaml"))
        texts = [f.text for f in verdict.findings]
        assert texts == [
            "Pod Restarts Detected: 2 restart(s) during monitoring window across 1 pod(s)",
            "orders-api-7f9c-abc12 - 2 restarts (At: Jan 9, 03:10:00 PM EST)",
            "Correlated with 12 application errors - likely application-level failure",
            "High P95 Latency Detected: 1 endpoint(s) with P95 > 1s (p95: 1.50s). "
            "Endpoints: GET /orders",
            "Errors Found: 10 total errors (10 endpoint errors, 10 trace errors)",
            "Most Common Error: 5.00% error rate on POST /orders endpoint",
            "Application Errors: 12 log errors detected during monitoring window",
            'Most Common Log Error: "connection reset by peer" occurred 7 times',
            "Throughput: 1200 total requests over 30 minutes (avg: 40.00 req/min)",
            "Resource Utilization: CPU: 20.00% avg, 40.00% peak | "
            "Memory: 51.25% avg, 70.00% peak",
        ]

    def test_categories_in_order(self):
        verdict = generate_verdict(_fixture("payload-incident.yaml"))
        categories = [f.category for f in verdict.findings]
        assert categories == [
            RESTARTS, RESTARTS, RESTARTS,
            LATENCY,
            ERRORS, ERRORS,
            LOG_ERRORS, LOG_ERRORS,
            THROUGHPUT,
            RESOURCE_UTILIZATION,
        ]

    def test_status_and_recommendations(self):
        verdict = generate_verdict(_fixture("payload-incident.yaml"))
        assert verdict.overall_status == WARNING
        assert verdict.recommendations == [
            "Application errors causing restarts: review application logs "
            "and implement proper error handling",
            "Investigate slow endpoints for database query optimization, "
            "external API calls, or inefficient algorithms",
        ]

    def test_before_window_pod_is_not_counted(self):
        verdict = generate_verdict(_fixture("payload-incident.yaml"))
        assert not any("def34" in f.text for f in verdict.findings)

    def test_most_common_log_error_is_highest_count(self):
        payload, _ = build_payload({
            "service": "orders-api",
            "errorMetrics": {"logSummary": {
                "totalLogErrors": 10,
                "errorsByMessage": [
                    {"message": "rare", "errorCount": 1},
                    {"message": "frequent", "errorCount": 9},
                ],
            }},
        })
        texts = [f.text for f in generate_verdict(payload).findings]
        assert 'Most Common Log Error: "frequent" occurred 9 times' in texts


class TestCriticalReport:
    def test_critical_status(self):
        verdict = generate_verdict(_fixture("payload-critical.json"))
        assert verdict.overall_status == CRITICAL
        assert verdict.findings[0].severity_contribution == CRITICAL

    def test_oom_cause_and_recommendations(self):
        verdict = generate_verdict(_fixture("payload-critical.json"))
        texts = [f.text for f in verdict.findings]
        assert "payments-worker-5d8b-x1 - 6 restarts (At: Jan 9, 04:00:00 PM EST)" in texts
        assert "High memory usage detected - likely OOM (Out of Memory) kill" in texts
        assert (
            "Frequent restarts detected: check health check configurations and resource limits"
            in verdict.recommendations
        )
        assert any(r.startswith("Memory usage peaked above 80%") for r in verdict.recommendations)

    def test_multiple_slow_endpoints(self):
        verdict = generate_verdict(_fixture("payload-critical.json"))
        latency = [f for f in verdict.findings if f.category == LATENCY][0]
        assert latency.text == (
            "High P95 Latency Detected: 2 endpoint(s) with P95 > 1s (p95: 2.40s, 1.10s). "
            "Endpoints: POST /payments, GET /payments/{id}"
        )

    @pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
    def test_status_is_independent_of_input_order(self, order):
        resources = [
            _resource("GET /a", p95_ms=1500.0),
            _resource("GET /b", p95_ms=2500.0),
            _resource("GET /c", p95_ms=1200.0),
        ]
        pods = [_restarting_pod("worker-1", 5), _restarting_pod("worker-2", 0)]
        payload = _payload(
            [resources[i] for i in order],
            pods if order[0] % 2 == 0 else list(reversed(pods)),
        )
        verdict = generate_verdict(payload)
        assert verdict.overall_status == CRITICAL
        # finding list order is fixed by category, not by input order
        assert verdict.findings[0].category == RESTARTS
        assert verdict.findings[-1].category == THROUGHPUT


class TestRestartSeverity:
    @pytest.mark.parametrize("restarts,expected", [
        (1, NONE),
        (2, WARNING),
        (4, WARNING),
        (5, CRITICAL),
        (9, CRITICAL),
    ])
    def test_contribution_by_count(self, restarts, expected):
        verdict = generate_verdict(_payload(pods=[_restarting_pod("worker-1", restarts)]))
        assert verdict.findings[0].category == RESTARTS
        assert verdict.findings[0].severity_contribution == expected

    def test_single_restart_keeps_good_status(self):
        verdict = generate_verdict(_payload(pods=[_restarting_pod("worker-1", 1)]))
        assert verdict.overall_status == GOOD
        assert verdict.findings[1].text == (
            "worker-1 - 1 restart (At: Jan 9, 03:10:00 PM EST)"
        )

    def test_counts_from_config(self):
        config = ReportConfig(restart_warning_count=3)
        verdict = generate_verdict(_payload(pods=[_restarting_pod("worker-1", 2)]), config)
        assert verdict.findings[0].severity_contribution == NONE


class TestHealthyReport:
    def test_good_status(self):
        verdict = generate_verdict(_fixture("payload-healthy.json"))
        assert verdict.overall_status == GOOD
        assert [f.text for f in verdict.findings] == [
            "Throughput: 960 total requests over 30 minutes (avg: 32.00 req/min)",
            "Resource Utilization: CPU: 22.50% avg, 35.00% peak | "
            "Memory: 41.00% avg, 48.00% peak",
            "All metrics within acceptable thresholds",
        ]
        assert verdict.recommendations == [
            "Continue monitoring performance trends over time",
            "Establish this test as a baseline for future regression testing",
        ]

    def test_empty_payload(self):
        verdict = generate_verdict(ReportPayload(service="orders-api", environment=""))
        assert verdict.overall_status == GOOD
        assert [f.text for f in verdict.findings] == ["All metrics within acceptable thresholds"]


class TestIdempotence:
    @pytest.mark.parametrize("name", [
        "payload-slow.json",
        "payload-incident.yaml",
        "payload-critical.json",
        "payload-healthy.json",
    ])
    def test_same_input_same_verdict(self, name):
        payload = _fixture(name)
        first = verdict_to_json(generate_verdict(payload))
        second = verdict_to_json(generate_verdict(payload))
        assert first == second


class TestSummarize:
    def test_incident_observations(self):
        observations = summarize(_fixture("payload-incident.yaml"))
        assert observations == [
            "Pod Restarts: 2 restart(s) across 1 pod(s) during monitoring window",
            "Performance Issues: High P95 latency (1.5+ seconds) on GET /orders endpoint",
            "Error Rate: 5.00% error rate on POST /orders endpoint with 10 errors",
            "Application Errors: 12 log errors detected during monitoring window",
            "Throughput: 1200 total requests over 30 minutes (avg: 40.00 req/min)",
        ]

    def test_worst_latency_is_named(self):
        observations = summarize(_fixture("payload-critical.json"))
        assert any("2.4+ seconds) on POST /payments" in o for o in observations)

    def test_healthy_has_only_throughput(self):
        observations = summarize(_fixture("payload-healthy.json"))
        assert len(observations) == 1
        assert observations[0].startswith("Throughput:")
