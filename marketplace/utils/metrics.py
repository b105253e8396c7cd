"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
escrow_transitions_total = Counter(
    "escrow_transitions_total",
    "Transaction state transitions committed to the ledger",
    ["from_state", "to_state"],
)

escrow_transition_conflicts_total = Counter(
    "escrow_transition_conflicts_total",
    "Rejected or lost compare-and-swap state transitions",
    ["to_state"],
)

gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["gateway", "operation", "status"],
)

reconciliation_issues_total = Counter(
    "reconciliation_issues_total",
    "Gateway/ledger mismatches recorded for reconciliation",
    ["operation"],
)

quota_rejections_total = Counter(
    "quota_rejections_total",
    "Listing/ad creations rejected by the subscription quota gate",
    ["kind", "plan"],
)

auto_release_results_total = Counter(
    "auto_release_results_total",
    "Per-transaction outcomes of the auto-release sweep",
    ["result"],  # released, skipped, failed
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway request duration",
    ["gateway", "operation"],
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10],
)

auto_release_sweep_duration_seconds = Histogram(
    "auto_release_sweep_duration_seconds",
    "Auto-release sweep duration",
    buckets=[0.5, 1, 5, 15, 30, 60, 120, 240],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
