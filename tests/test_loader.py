"""Tests for report payload loading and validation."""

import json
import os
import tempfile
from datetime import datetime, timezone

import pytest
import yaml

from telemetry_report.loader import (
    PayloadValidationError,
    build_payload,
    load_payload,
    parse_number,
    parse_time,
)


FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "..", "fixtures")


def _write_temp(data, suffix=".json"):
    """Write data to a temp file and return the path."""
    f = tempfile.NamedTemporaryFile(mode="w", suffix=suffix, delete=False)
    if suffix == ".json":
        json.dump(data, f)
    else:
        yaml.dump(data, f)
    f.close()
    return f.name


class TestLoadPayloadFiles:
    def test_load_valid_json(self):
        payload, warnings = load_payload(os.path.join(FIXTURES_DIR, "payload-slow.json"))
        assert warnings == []
        assert payload.service == "orders-api"
        assert payload.environment == "staging"
        assert payload.time_range.minutes == 30
        assert len(payload.resources) == 1
        resource = payload.resources[0]
        assert resource.resource_name == "GET /orders"
        assert resource.requests == 1000
        assert resource.p95_ms == 1500.0
        assert resource.p99_ms == 2000.0
        assert resource.rate_hits_per_sec == 2.0
        assert payload.error_metrics is None
        assert payload.pod_metrics is None

    def test_load_valid_yaml(self):
        payload, warnings = load_payload(os.path.join(FIXTURES_DIR, "payload-incident.yaml"))
        assert warnings == []
        assert [r.resource_name for r in payload.resources] == ["GET /orders", "POST /orders"]
        assert payload.resources[1].p99_ms is None
        assert payload.resources[1].error_rate_pct == 5.0
        assert payload.log_error_count == 12
        assert payload.error_metrics.trace_summary.total_errors == 10
        assert payload.error_metrics.log_summary.top_messages[0].count == 7

    def test_oom_summary(self):
        payload, _ = load_payload(os.path.join(FIXTURES_DIR, "payload-incident.yaml"))
        oom = payload.error_metrics.oom_summary
        assert payload.oom_event_count == 1
        assert oom.events[0].title == "Pod orders-api-7f9c-abc12 OOMKilled"
        assert oom.events[0].host == "node-1"
        assert oom.events[0].timestamp == "2025-01-09T20:02:00+00:00"

    def test_pod_metrics(self):
        payload, _ = load_payload(os.path.join(FIXTURES_DIR, "payload-incident.yaml"))
        pods = payload.pod_metrics
        assert [p.pod_name for p in pods.pods] == ["orders-api-7f9c-abc12", "orders-api-7f9c-def34"]
        assert pods.pods[0].restarts == 2
        assert pods.summary.avg_memory_pct == 51.25
        assert pods.memory_pct_by_pod() == {
            "orders-api-7f9c-abc12": 70.0,
            "orders-api-7f9c-def34": 45.0,
        }
        assert [e.entity_name for e in pods.restart_events] == [
            "orders-api-7f9c-abc12",
            "orders-api-7f9c-def34",
        ]
        assert pods.window_start == datetime(2025, 1, 9, 20, 0, tzinfo=timezone.utc)

    def test_missing_file(self):
        with pytest.raises(PayloadValidationError, match="not found"):
            load_payload("/nonexistent/payload.json")

    def test_unsupported_extension(self):
        with tempfile.NamedTemporaryFile(suffix=".txt", delete=False) as f:
            f.write(b"service: x")
        try:
            with pytest.raises(PayloadValidationError, match="unsupported"):
                load_payload(f.name)
        finally:
            os.unlink(f.name)

    def test_broken_json(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            f.write("{not json")
        try:
            with pytest.raises(PayloadValidationError, match="failed to parse"):
                load_payload(f.name)
        finally:
            os.unlink(f.name)

    def test_top_level_list(self):
        path = _write_temp([{"service": "x"}])
        try:
            with pytest.raises(PayloadValidationError, match="mapping"):
                load_payload(path)
        finally:
            os.unlink(path)

    def test_yaml_round_trip_through_temp_file(self):
        path = _write_temp({"service": "orders-api", "metrics": []}, suffix=".yaml")
        try:
            payload, _ = load_payload(path)
            assert payload.service == "orders-api"
            assert payload.environment == ""
            assert payload.time_range is None
        finally:
            os.unlink(path)


class TestPayloadValidation:
    def test_invalid_fixture_collects_all_errors(self):
        with pytest.raises(PayloadValidationError) as exc_info:
            load_payload(os.path.join(FIXTURES_DIR, "payload-invalid.json"))
        message = str(exc_info.value)
        assert "'service' is required" in message
        assert "'timeRange.to' must be later" in message
        assert "metrics[0].resource_name is required" in message

    def test_environment_must_be_string(self):
        with pytest.raises(PayloadValidationError, match="environment"):
            build_payload({"service": "x", "environment": 3})

    def test_metrics_must_be_list(self):
        with pytest.raises(PayloadValidationError, match="'metrics' must be a list"):
            build_payload({"service": "x", "metrics": {"GET /": {}}})

    def test_bad_timestamp(self):
        with pytest.raises(PayloadValidationError, match="invalid timestamp"):
            build_payload({"service": "x", "timeRange": {"from": "yesterday", "to": "today"}})

    def test_epoch_time_range(self):
        payload, _ = build_payload({
            "service": "x",
            "timeRange": {"from": 1736452800000, "to": "1736454600000"},
        })
        assert payload.time_range.seconds == 1800


class TestMessyPayload:
    def test_warnings_for_dropped_values(self):
        payload, warnings = load_payload(os.path.join(FIXTURES_DIR, "payload-messy.json"))
        assert len(warnings) == 3
        assert any("GET /orders.p95_latency" in w for w in warnings)
        assert any("without podName" in w for w in warnings)
        assert any("skipped restart series" in w for w in warnings)

    def test_values_that_survive(self):
        payload, _ = load_payload(os.path.join(FIXTURES_DIR, "payload-messy.json"))
        resource = payload.resources[0]
        assert resource.requests == 1200
        assert resource.p95_ms is None
        assert resource.p99_ms is None
        assert resource.error_rate_pct == pytest.approx(0.25)
        assert [p.pod_name for p in payload.pod_metrics.pods] == ["orders-api-7f9c-abc12"]
        assert len(payload.pod_metrics.restart_events) == 1
        assert payload.pod_metrics.summary is None

    def test_placeholder_log_messages_are_skipped(self):
        payload, _ = load_payload(os.path.join(FIXTURES_DIR, "payload-messy.json"))
        messages = payload.error_metrics.log_summary.top_messages
        assert [m.message for m in messages] == ["db pool exhausted"]
        assert messages[0].count == 2

    def test_non_mapping_sections(self):
        payload, warnings = build_payload({
            "service": "x",
            "errorMetrics": "none",
            "podMetrics": [],
        })
        assert payload.error_metrics is None
        assert payload.pod_metrics is None
        assert len(warnings) == 2

    def test_errors_by_message_sorted_by_count(self):
        payload, warnings = build_payload({
            "service": "x",
            "errorMetrics": {"logSummary": {
                "totalLogErrors": 10,
                "errorsByMessage": [
                    {"message": "rare", "errorCount": 1},
                    {"message": "frequent", "errorCount": 9},
                ],
            }},
        })
        assert warnings == []
        messages = payload.error_metrics.log_summary.top_messages
        assert [m.message for m in messages] == ["frequent", "rare"]

    def test_top_messages_keep_source_order(self):
        payload, _ = build_payload({
            "service": "x",
            "errorMetrics": {"logSummary": {
                "topMessages": [{"message": "first", "count": 1}, {"message": "second", "count": 4}],
            }},
        })
        assert [m.message for m in payload.error_metrics.log_summary.top_messages] == ["first", "second"]

    def test_window_start_falls_back_to_time_range(self):
        payload, _ = build_payload({
            "service": "x",
            "timeRange": {"from": "2025-01-09T20:00:00Z", "to": "2025-01-09T20:30:00Z"},
            "podMetrics": {"podMetrics": [], "timeSeries": "n/a"},
        })
        assert payload.pod_metrics.window_start == payload.time_range.start


class TestParseNumber:
    @pytest.mark.parametrize("value,expected", [
        (12, 12.0),
        (1.5, 1.5),
        ("1500 ms", 1500.0),
        ("0.56 hits/s", 0.56),
        ("1,234", 1234.0),
        ("-3", -3.0),
    ])
    def test_numbers(self, value, expected):
        assert parse_number(value) == expected

    @pytest.mark.parametrize("value", [None, "", "N/A", "-", "null", True])
    def test_placeholders(self, value):
        assert parse_number(value) is None

    def test_no_number(self):
        with pytest.raises(ValueError):
            parse_number("fast")


class TestParseTime:
    def test_iso_with_z(self):
        assert parse_time("2025-01-09T20:00:00Z") == datetime(2025, 1, 9, 20, 0, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_time("2025-01-09T20:00:00").tzinfo is not None

    def test_epoch_ms(self):
        assert parse_time(1736452800000) == datetime(2025, 1, 9, 20, 0, tzinfo=timezone.utc)

    def test_not_a_timestamp(self):
        with pytest.raises(ValueError):
            parse_time(None)


class TestMalformedSections:
    @pytest.mark.parametrize("section,label", [
        ({"podMetrics": {"podMetrics": 5}}, "podMetrics.podMetrics"),
        ({"podMetrics": {"podMetrics": {"podName": "abc12"}}}, "podMetrics.podMetrics"),
        ({"podMetrics": {"timeSeries": {"restarts": {"series": 5}}}}, "timeSeries.restarts.series"),
        ({"errorMetrics": {"logSummary": {"errorsByMessage": 5}}}, "logSummary.errorsByMessage"),
        ({"errorMetrics": {"logSummary": {"topMessages": "x"}}}, "logSummary.topMessages"),
        ({"errorMetrics": {"oomSummary": {"oomEventDetails": "oom"}}}, "oomSummary.oomEventDetails"),
    ])
    def test_non_list_is_skipped_with_warning(self, section, label):
        payload, warnings = build_payload(dict({"service": "x"}, **section))
        assert warnings == [f"'{label}' is not a list; skipped"]
        if payload.pod_metrics is not None:
            assert payload.pod_metrics.pods == []
            assert payload.pod_metrics.restart_events == []
        if payload.error_metrics is not None and payload.error_metrics.log_summary is not None:
            assert payload.error_metrics.log_summary.top_messages == []

    def test_non_list_pointlist_skips_the_series(self):
        payload, warnings = build_payload({
            "service": "x",
            "podMetrics": {"timeSeries": {"restarts": {"series": [
                {"scope": "pod_name:abc12", "pointlist": 5},
                {"scope": "pod_name:def34", "pointlist": [[1736452800000, 1]]},
            ]}}},
        })
        assert len(warnings) == 1
        assert "pointlist for abc12 must be a list" in warnings[0]
        assert [e.entity_name for e in payload.pod_metrics.restart_events] == ["def34"]
