"""Prometheus metrics definitions for the R-Map orchestrator."""
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest


# =============================================================================
# Counters (monotonically increasing)
# =============================================================================

scans_total = Counter(
    "rmap_scans_total",
    "Total number of scan jobs by kind and state",
    ["kind", "state"]
)

api_requests_total = Counter(
    "rmap_api_requests_total",
    "Total number of inbound tool invocations",
    ["tool", "status"]
)

events_published_total = Counter(
    "rmap_events_published_total",
    "Total number of events published to subscribers",
    ["event"]
)

subscriber_drops_total = Counter(
    "rmap_subscriber_drops_total",
    "Subscribers removed because they were closed or too slow",
    ["reason"]  # closed, full
)

findings_total = Counter(
    "rmap_findings_total",
    "Findings produced by the vulnerability analyzer",
    ["severity"]
)


# =============================================================================
# Gauges (can go up and down)
# =============================================================================

active_jobs = Gauge(
    "rmap_active_jobs",
    "Number of pending or running scan jobs"
)

subscribers = Gauge(
    "rmap_subscribers",
    "Number of live event subscribers"
)

history_size = Gauge(
    "rmap_history_size",
    "Number of entries in the job history"
)


# =============================================================================
# Histograms (distribution of values)
# =============================================================================

job_duration_seconds = Histogram(
    "rmap_job_duration_seconds",
    "Scan job duration in seconds",
    buckets=[1, 5, 15, 30, 60, 300, 900, 3600]  # 1s .. 1h
)


# =============================================================================
# Metric Helpers
# =============================================================================

def metrics_response() -> bytes:
    """
    Generate Prometheus metrics response.

    Returns:
        Prometheus text format metrics
    """
    return generate_latest(REGISTRY)


def record_tool_call(tool_name: str, status: str = "success"):
    """
    Record inbound tool invocation.

    Args:
        tool_name: Name of the tool (run_scan, stop_scan, etc.)
        status: Status (success, error)
    """
    api_requests_total.labels(tool=tool_name, status=status).inc()


def record_scan_submission(kind: str):
    """Record a job accepted by the registry."""
    scans_total.labels(kind=kind, state="pending").inc()


def record_scan_completion(kind: str, state: str, duration_seconds: float | None = None):
    """
    Record a job reaching a terminal state.

    Args:
        kind: Request kind (scan, quick, discovery, ...)
        state: Terminal state (completed, failed, stopped)
        duration_seconds: Wall time of the job, if known
    """
    scans_total.labels(kind=kind, state=state).inc()
    if duration_seconds is not None:
        job_duration_seconds.observe(duration_seconds)


def record_event(event_type: str):
    events_published_total.labels(event=event_type).inc()


def record_subscriber_drop(reason: str):
    subscriber_drops_total.labels(reason=reason).inc()


def record_findings(severities: list[str]):
    for severity in severities:
        findings_total.labels(severity=severity).inc()


def update_active_jobs_count(count: int):
    active_jobs.set(count)


def update_subscriber_count(count: int):
    subscribers.set(count)


def update_history_size(count: int):
    history_size.set(count)
