"""Append-only log of report runs in JSONL format."""

import json
import logging
import os
from dataclasses import asdict, fields
from datetime import datetime, timezone
from typing import List

from telemetry_report.models import EvidenceEvent

logger = logging.getLogger(__name__)


def create_event(
    service: str,
    environment: str,
    payload_path: str,
    overall_status: str,
    finding_count: int,
    outcome: str = "report-generated",
) -> EvidenceEvent:
    """Build an EvidenceEvent stamped with the current UTC time.

    Args:
        service: Name of the service the report covers.
        environment: Deployment environment of the service.
        payload_path: Path to the payload the report was generated from.
        overall_status: Verdict status ("good", "warning", "critical").
        finding_count: Number of findings in the verdict.
        outcome: High-level outcome label.

    Returns:
        A populated EvidenceEvent.
    """
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return EvidenceEvent(
        ts=ts,
        service=service,
        environment=environment,
        payload=payload_path,
        overall_status=overall_status,
        finding_count=finding_count,
        outcome=outcome,
    )


def append_event(event: EvidenceEvent, log_path: str) -> None:
    """Append a single evidence event as a JSONL line.

    Creates the file (and parent directories) if it does not exist.
    Never overwrites existing entries.
    """
    parent = os.path.dirname(log_path)
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, exist_ok=True)

    with open(log_path, "a") as f:
        f.write(json.dumps(asdict(event)) + "\n")


def read_events(log_path: str) -> List[EvidenceEvent]:
    """Read all events from a JSONL evidence log; malformed lines are skipped."""
    if not os.path.isfile(log_path):
        return []

    events = []
    with open(log_path, "r") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(_event_from_dict(json.loads(line)))
            except (json.JSONDecodeError, AttributeError, TypeError):
                logger.warning("skipping malformed evidence line %d in %s", lineno, log_path)
    return events


def _event_from_dict(raw: dict) -> EvidenceEvent:
    # unknown keys are ignored, missing required keys raise TypeError
    known = {f.name for f in fields(EvidenceEvent)}
    return EvidenceEvent(**{k: v for k, v in raw.items() if k in known})
