"""CLI entry point for the performance telemetry report tool."""

import json
import logging
import sys

import click

from telemetry_report.aggregates import EmptyInputError, InvalidWindowError
from telemetry_report.config import ConfigError, load_config
from telemetry_report.datadog import DatadogAPIError, DatadogClient
from telemetry_report.evidence import append_event, create_event
from telemetry_report.findings import generate_verdict, summarize
from telemetry_report.loader import PayloadValidationError, load_payload, parse_time
from telemetry_report.models import GOOD
from telemetry_report.report import build_narrative, verdict_to_json


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def main(verbose):
    """Performance telemetry reports -- turn service metrics into findings and a verdict."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


@main.command()
@click.option(
    "--payload",
    required=True,
    type=click.Path(exists=True),
    help="Path to a report payload (JSON or YAML).",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True),
    help="Optional YAML config with report thresholds.",
)
@click.option(
    "--out",
    default=None,
    type=click.Path(),
    help="Optional output path for the verdict (JSON).",
)
@click.option(
    "--log",
    "log_path",
    default=None,
    type=click.Path(),
    help="Optional path to the evidence log (JSONL). Appends an entry when provided.",
)
def analyze(payload, config_path, out, log_path):
    """Analyze a report payload and print the verdict."""
    report_config, payload_data = _load_inputs(payload, config_path)

    try:
        verdict = generate_verdict(payload_data, report_config)
    except (EmptyInputError, InvalidWindowError) as exc:
        click.echo(f"Error: report generation failed: {exc}", err=True)
        sys.exit(1)

    click.echo(build_narrative(verdict, payload_data, report_config))

    if out:
        with open(out, "w") as f:
            f.write(verdict_to_json(verdict) + "\n")
        click.echo(f"Verdict written to {out}")

    if log_path:
        outcome = "issues-detected" if verdict.overall_status != GOOD else "report-generated"
        event = create_event(
            service=payload_data.service,
            environment=payload_data.environment,
            payload_path=payload,
            overall_status=verdict.overall_status,
            finding_count=len(verdict.findings),
            outcome=outcome,
        )
        append_event(event, log_path)
        click.echo(f"Evidence logged to {log_path}")


@main.command(name="summarize")
@click.option(
    "--payload",
    required=True,
    type=click.Path(exists=True),
    help="Path to a report payload (JSON or YAML).",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True),
    help="Optional YAML config with report thresholds.",
)
def summarize_cmd(payload, config_path):
    """Print short one-line observations for a notification."""
    report_config, payload_data = _load_inputs(payload, config_path)

    try:
        observations = summarize(payload_data, report_config)
    except (EmptyInputError, InvalidWindowError) as exc:
        click.echo(f"Error: report generation failed: {exc}", err=True)
        sys.exit(1)

    if not observations:
        click.echo("No notable observations.")
    for line in observations:
        click.echo(f"- {line}")


@main.command()
@click.option("--service", required=True, help="Service name as tagged in Datadog.")
@click.option("--env", "environment", default="staging", show_default=True, help="Environment tag.")
@click.option("--from", "time_from", required=True, help="Window start (ISO-8601).")
@click.option("--to", "time_to", required=True, help="Window end (ISO-8601).")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True),
    help="Optional YAML config with Datadog settings.",
)
@click.option("--out", required=True, type=click.Path(), help="Output path for the payload (JSON).")
def fetch(service, environment, time_from, time_to, config_path, out):
    """Collect a report payload from Datadog."""
    try:
        _, settings = load_config(config_path)
        start, end = parse_time(time_from), parse_time(time_to)
    except (ConfigError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if end <= start:
        click.echo("Error: --to must be later than --from", err=True)
        sys.exit(1)

    try:
        with DatadogClient(settings) as client:
            raw = client.fetch_payload(service, environment, start, end)
    except (DatadogAPIError, InvalidWindowError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    with open(out, "w") as f:
        f.write(json.dumps(raw, indent=2) + "\n")
    click.echo(f"Payload with {len(raw['metrics'])} endpoint(s) written to {out}")


def _load_inputs(payload_path, config_path):
    try:
        report_config, _ = load_config(config_path)
        payload_data, warnings = load_payload(payload_path)
    except (ConfigError, PayloadValidationError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    for w in warnings:
        click.echo(f"Warning: {w}", err=True)
    return report_config, payload_data


if __name__ == "__main__":
    main()
