"""Prometheus metrics for the availability poller."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("beacon_availability", "Availability poller application info")
app_info.info({"version": "0.1.0", "name": "beacon-availability"})

# URL candidate metrics
url_candidate_events_total = Counter(
    "url_candidate_events_total",
    "URL candidate checker events per retailer",
    ["retailer", "event"],
)

url_candidate_budget_denied_total = Counter(
    "url_candidate_budget_denied_total",
    "Candidates skipped because the retailer request budget was exhausted",
    ["retailer"],
)

url_candidate_fetch_duration_seconds = Histogram(
    "url_candidate_fetch_duration_seconds",
    "Time spent fetching candidate URLs",
    ["retailer", "rendered"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 45.0],
)

url_candidate_batches_total = Counter(
    "url_candidate_batches_total",
    "Candidate checker batch runs",
    ["status"],
)

# Retailer adapter metrics
adapter_requests_total = Counter(
    "retailer_adapter_requests_total",
    "Retailer adapter requests",
    ["retailer", "status"],
)

adapter_request_duration_seconds = Histogram(
    "retailer_adapter_request_duration_seconds",
    "Retailer adapter request latency",
    ["retailer"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

adapter_rate_limit_hits_total = Counter(
    "retailer_adapter_rate_limit_hits_total",
    "Requests denied by the adapter rate-limit gate or an open circuit",
    ["retailer", "gate"],
)

adapter_circuit_state = Gauge(
    "retailer_adapter_circuit_state",
    "Circuit breaker state per retailer (0=closed, 1=half_open, 2=open)",
    ["retailer"],
)

# Drop signal metrics
drop_signals_total = Counter(
    "drop_signals_total",
    "Drop signals published downstream",
    ["signal_type", "status"],
)

_CIRCUIT_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}


def record_candidate_event(retailer: str, event: str):
    """Count a candidate checker event (requests, blocked, valid, live, invalid, errors)."""
    url_candidate_events_total.labels(retailer=retailer, event=event).inc()


def record_budget_denied(retailer: str):
    url_candidate_budget_denied_total.labels(retailer=retailer).inc()


def record_candidate_fetch(retailer: str, duration: float, rendered: bool):
    url_candidate_fetch_duration_seconds.labels(
        retailer=retailer, rendered="true" if rendered else "false"
    ).observe(duration)


def record_batch_run(success: bool):
    url_candidate_batches_total.labels(status="success" if success else "failure").inc()


def record_adapter_request(retailer: str, success: bool, duration_ms: float):
    """Record one adapter request outcome and its latency."""
    adapter_requests_total.labels(
        retailer=retailer, status="success" if success else "failure"
    ).inc()
    adapter_request_duration_seconds.labels(retailer=retailer).observe(duration_ms / 1000.0)


def record_rate_limit_hit(retailer: str, gate: str):
    adapter_rate_limit_hits_total.labels(retailer=retailer, gate=gate).inc()


def update_circuit_state(retailer: str, state: str):
    adapter_circuit_state.labels(retailer=retailer).set(_CIRCUIT_STATE_VALUES.get(state, 0))


def record_drop_signal(signal_type: str, published: bool):
    drop_signals_total.labels(
        signal_type=signal_type, status="published" if published else "skipped"
    ).inc()
