"""Data models for report payloads, derived metrics, findings, and evidence events."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


# Overall report status, ordered good < warning < critical.
GOOD = "good"
WARNING = "warning"
CRITICAL = "critical"
SEVERITY_RANK = {GOOD: 0, WARNING: 1, CRITICAL: 2}

# Severity contribution of a single finding.
NONE = "none"

# Finding categories.
RESTARTS = "Restarts"
LATENCY = "Latency"
ERRORS = "Errors"
THROUGHPUT = "Throughput"
RESOURCE_UTILIZATION = "ResourceUtilization"
LOG_ERRORS = "LogErrors"


@dataclass(frozen=True)
class MetricSample:
    timestamp: int  # epoch ms
    value: Optional[float] = None


@dataclass(frozen=True)
class ResourceSummary:
    resource_name: str
    requests: int
    p95_ms: Optional[float]
    p99_ms: Optional[float]
    rate_hits_per_sec: float
    error_count: int
    error_rate_pct: float
    mean_sample_rate: Optional[float] = None  # average of per-bucket rates


@dataclass
class RestartEvent:
    entity_name: str
    restart_count: int
    timeline: List[MetricSample] = field(default_factory=list)


@dataclass(frozen=True)
class RestartClassification:
    entity_name: str
    occurred_during_window: bool
    label_text: Optional[str] = None


@dataclass(frozen=True)
class Finding:
    category: str
    text: str
    severity_contribution: str = NONE  # "none", "warning", "critical"


@dataclass
class ReportVerdict:
    overall_status: str  # "good", "warning", "critical"
    findings: List[Finding] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    @property
    def seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    @property
    def minutes(self) -> float:
        return self.seconds / 60


@dataclass
class PodMetric:
    pod_name: str
    restarts: int = 0
    avg_cpu_pct: Optional[float] = None
    max_cpu_pct: Optional[float] = None
    avg_memory_pct: Optional[float] = None
    max_memory_pct: Optional[float] = None


@dataclass
class ResourceUsage:
    avg_cpu_pct: Optional[float] = None
    max_cpu_pct: Optional[float] = None
    avg_memory_pct: Optional[float] = None
    max_memory_pct: Optional[float] = None


@dataclass
class PodMetrics:
    pods: List[PodMetric] = field(default_factory=list)
    summary: Optional[ResourceUsage] = None
    restart_events: List[RestartEvent] = field(default_factory=list)
    window_start: Optional[datetime] = None

    def memory_pct_by_pod(self) -> Dict[str, float]:
        return {p.pod_name: p.max_memory_pct for p in self.pods if p.max_memory_pct is not None}

    def cpu_pct_by_pod(self) -> Dict[str, float]:
        return {p.pod_name: p.max_cpu_pct for p in self.pods if p.max_cpu_pct is not None}


@dataclass(frozen=True)
class LogMessage:
    message: str
    count: int


@dataclass
class LogSummary:
    total_log_errors: int = 0
    top_messages: List[LogMessage] = field(default_factory=list)


@dataclass
class TraceSummary:
    total_errors: int = 0
    error_percentage: float = 0.0


@dataclass(frozen=True)
class OOMEvent:
    timestamp: str
    title: str
    host: Optional[str] = None


@dataclass
class OOMSummary:
    total_oom_events: int = 0
    events: List[OOMEvent] = field(default_factory=list)


@dataclass
class ErrorMetrics:
    log_summary: Optional[LogSummary] = None
    trace_summary: Optional[TraceSummary] = None
    oom_summary: Optional[OOMSummary] = None


@dataclass
class ReportPayload:
    service: str
    environment: str
    time_range: Optional[TimeRange] = None
    resources: List[ResourceSummary] = field(default_factory=list)
    error_metrics: Optional[ErrorMetrics] = None
    pod_metrics: Optional[PodMetrics] = None

    @property
    def log_error_count(self) -> int:
        if self.error_metrics is None or self.error_metrics.log_summary is None:
            return 0
        return self.error_metrics.log_summary.total_log_errors

    @property
    def oom_event_count(self) -> int:
        if self.error_metrics is None or self.error_metrics.oom_summary is None:
            return 0
        return self.error_metrics.oom_summary.total_oom_events


@dataclass
class ReportConfig:
    latency_threshold_ms: float = 1000.0
    restart_warning_count: int = 2
    restart_critical_count: int = 5
    frequent_restart_count: int = 3
    oom_memory_pct: float = 90.0
    resource_peak_pct: float = 80.0
    default_window_minutes: float = 30.0
    display_timezone: str = "America/New_York"
    timezone_label: str = "EST"
    load_pattern: str = ""


@dataclass
class EvidenceEvent:
    ts: str
    service: str
    environment: str
    payload: str
    overall_status: str = GOOD
    finding_count: int = 0
    outcome: str = "report-generated"
