from typing import List, Optional

from fastapi import FastAPI, Header, HTTPException, Query

app = FastAPI(title="Mock Datadog API")

_STEP_MS = 60_000

# Canned per-series values, keyed by a fragment of the metric query.
_SERIES = {
    ".hits{": {
        "resource_name:GET /orders,service:orders-api": [400, 600],
        "resource_name:POST /orders,service:orders-api": [100, 100],
    },
    ".errors{": {
        "resource_name:POST /orders,service:orders-api": [5, 5],
    },
    "p95:": {
        "resource_name:GET /orders,service:orders-api": [0.2, 1.5, 0.3],
        "resource_name:POST /orders,service:orders-api": [0.1, 0.12],
    },
    "p99:": {
        "resource_name:GET /orders,service:orders-api": [0.4, 2.0, 0.5],
        "resource_name:POST /orders,service:orders-api": [0.15, 0.2],
    },
    "containers.restarts": {
        "pod_name:orders-api-7f9c-abc12": [0, 0, 2, 2],
        "pod_name:orders-api-7f9c-def34": [1, 1, 1],
    },
    "memory.usage_pct": {
        "pod_name:orders-api-7f9c-abc12": [0.5, 0.7],
        "pod_name:orders-api-7f9c-def34": [0.4, 0.45],
    },
    "cpu.usage.total": {
        "pod_name:orders-api-7f9c-abc12": [2e8, 4e8],
        "pod_name:orders-api-7f9c-def34": [1e8, 1e8],
    },
    "cpu.limits": {
        "pod_name:orders-api-7f9c-abc12": [1, 1],
        "pod_name:orders-api-7f9c-def34": [1, 1],
    },
}


# Canned error logs; they carry level:error rather than status:error.
_LOG_MESSAGES = ["connection reset by peer"] * 7 + ["upstream request timeout"] * 5 + [None]

# Canned events as (seconds after window start, title, text).
_EVENTS = [
    (120, "Pod orders-api-7f9c-abc12 OOMKilled", "Container exceeded its memory limit"),
    (600, "Deployment finished", "orders-api rolled out"),
]


def _require_keys(api_key: Optional[str], app_key: Optional[str]) -> None:
    if not api_key or not app_key:
        raise HTTPException(status_code=403, detail="Forbidden")


def _pointlist(start_ms: int, values: List[float]) -> list:
    return [[start_ms + i * _STEP_MS, v] for i, v in enumerate(values)]


@app.get("/api/v1/query")
async def query(
    query: str,
    from_s: int = Query(..., alias="from"),
    to_s: int = Query(..., alias="to"),
    dd_api_key: Optional[str] = Header(None),
    dd_application_key: Optional[str] = Header(None),
):
    _require_keys(dd_api_key, dd_application_key)

    series = []
    for fragment, by_scope in _SERIES.items():
        if fragment not in query:
            continue
        # the hits query serves both the count and the rate tables
        if fragment == ".hits{" and query.endswith(".as_rate()"):
            by_scope = {scope: [v / 60 for v in values] for scope, values in by_scope.items()}
        for scope, values in by_scope.items():
            series.append({
                "expression": query.split(" by ")[0],
                "scope": scope,
                "pointlist": _pointlist(from_s * 1000, values),
            })
        break

    return {"status": "ok", "query": query, "from_date": from_s * 1000, "to_date": to_s * 1000, "series": series}


@app.get("/api/v2/logs/events")
async def logs_events(
    filter_query: str = Query("", alias="filter[query]"),
    page_limit: int = Query(10, alias="page[limit]"),
    page_cursor: Optional[str] = Query(None, alias="page[cursor]"),
    dd_api_key: Optional[str] = Header(None),
    dd_application_key: Optional[str] = Header(None),
):
    _require_keys(dd_api_key, dd_application_key)

    matches = []
    if "orders-api" in filter_query and "level:error" in filter_query:
        matches = _LOG_MESSAGES
    offset = int(page_cursor or 0)
    page = matches[offset:offset + page_limit]

    data = []
    for i, message in enumerate(page, start=offset):
        custom = {"service": "orders-api", "level": "error"}
        if message:
            custom["message"] = message
        data.append({"id": f"log-{i}", "type": "log", "attributes": {"attributes": custom}})

    meta = {"page": {}}
    if offset + page_limit < len(matches):
        meta["page"]["after"] = str(offset + page_limit)
    return {"data": data, "meta": meta}


@app.get("/api/v1/events")
async def events(
    start: int,
    end: int,
    tags: str = "",
    dd_api_key: Optional[str] = Header(None),
    dd_application_key: Optional[str] = Header(None),
):
    _require_keys(dd_api_key, dd_application_key)

    if tags != "service:orders-api":
        return {"events": []}
    return {"events": [
        {
            "date_happened": start + offset,
            "title": title,
            "text": text,
            "priority": "normal",
            "alert_type": "error" if "OOM" in title else "info",
            "host": "node-1",
            "tags": [tags],
        }
        for offset, title, text in _EVENTS
    ]}


# Run with: uvicorn mock_service.app:app --port 8001 --reload
