"""Report thresholds and Datadog connection settings."""

import os
from dataclasses import dataclass, fields
from typing import Optional, Tuple

import yaml
from dotenv import load_dotenv

from telemetry_report.models import ReportConfig


class ConfigError(Exception):
    """Raised when a configuration file or value is invalid."""


_TRACE_FRAMEWORKS = ("fastapi", "express")


@dataclass
class DatadogSettings:
    api_key: str = ""
    app_key: str = ""
    site: str = "datadoghq.com"
    base_url: str = ""
    trace_framework: str = "express"
    timeout_seconds: float = 60.0
    max_attempts: int = 3
    backoff_seconds: float = 1.0

    @property
    def api_root(self) -> str:
        return (self.base_url or f"https://api.{self.site}").rstrip("/")

    @property
    def query_url(self) -> str:
        return self.api_root + "/api/v1/query"

    @property
    def logs_url(self) -> str:
        return self.api_root + "/api/v2/logs/events"

    @property
    def events_url(self) -> str:
        return self.api_root + "/api/v1/events"


def load_config(path: Optional[str] = None) -> Tuple[ReportConfig, DatadogSettings]:
    """Load report and Datadog settings.

    The optional YAML file may hold a ``report:`` mapping overriding any
    ReportConfig field and a ``datadog:`` mapping for query behavior. API
    credentials are read from the environment (and a ``.env`` file).

    Args:
        path: Optional path to a YAML config file.

    Returns:
        A tuple of (ReportConfig, DatadogSettings).

    Raises:
        ConfigError: If the file cannot be read or holds invalid values.
    """
    raw = {}
    if path:
        if not os.path.isfile(path):
            raise ConfigError(f"config file not found: {path}")
        try:
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"failed to parse {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError("config must be a mapping at the top level")

    report = _build_report_config(raw.get("report") or {})
    datadog = load_datadog_settings(raw.get("datadog") or {})
    return report, datadog


def load_datadog_settings(overrides: Optional[dict] = None) -> DatadogSettings:
    load_dotenv()
    overrides = overrides or {}
    settings = DatadogSettings(
        api_key=os.getenv("DD_API_KEY", ""),
        app_key=os.getenv("DD_APP_KEY", ""),
        site=os.getenv("DD_SITE", "datadoghq.com"),
        base_url=os.getenv("DD_API_BASE_URL", ""),
    )

    framework = overrides.get("trace_framework", settings.trace_framework)
    if framework not in _TRACE_FRAMEWORKS:
        raise ConfigError(
            f"datadog.trace_framework must be one of {', '.join(_TRACE_FRAMEWORKS)}, got {framework!r}"
        )
    settings.trace_framework = framework

    for key in ("timeout_seconds", "backoff_seconds"):
        if key in overrides:
            setattr(settings, key, _positive(overrides[key], f"datadog.{key}"))
    if "max_attempts" in overrides:
        settings.max_attempts = _whole(overrides["max_attempts"], "datadog.max_attempts")
    return settings


def _build_report_config(raw: dict) -> ReportConfig:
    if not isinstance(raw, dict):
        raise ConfigError("'report' must be a mapping")

    defaults = ReportConfig()
    known = {f.name: f for f in fields(ReportConfig)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ConfigError(f"unknown report setting(s): {', '.join(unknown)}")

    values = {}
    for name, value in raw.items():
        default = getattr(defaults, name)
        if isinstance(default, str):
            if not isinstance(value, str):
                raise ConfigError(f"report.{name} must be a string")
            values[name] = value
        elif isinstance(default, int):
            values[name] = _whole(value, f"report.{name}")
        else:
            values[name] = _positive(value, f"report.{name}")
    return ReportConfig(**values)


def _positive(value, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label} must be a number")
    if value <= 0:
        raise ConfigError(f"{label} must be positive")
    return float(value)


def _whole(value, label: str) -> int:
    number = _positive(value, label)
    if not number.is_integer():
        raise ConfigError(f"{label} must be a whole number, got {value!r}")
    return int(number)
