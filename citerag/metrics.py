"""
Prometheus metrics for the cited-answer API.

Provides counters and histograms for tracking:
- Request counts and status codes
- Retrieval attempt outcomes across the attempt matrix
- Upstream call latency
- Empty-evidence short circuits
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

# ============================================================================
# HTTP Request Metrics
# ============================================================================

request_count = Counter(
    'citerag_requests_total',
    'Total number of answer requests',
    ['status']
)

# ============================================================================
# Upstream Metrics
# ============================================================================

retrieval_attempts = Counter(
    'citerag_retrieval_attempts_total',
    'Retrieval attempts by outcome',
    ['outcome']
)

upstream_latency = Histogram(
    'citerag_upstream_duration_seconds',
    'Upstream call latency in seconds',
    ['service'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

empty_evidence = Counter(
    'citerag_empty_evidence_total',
    'Requests answered with the no-relevant-passages fallback'
)


def track_request(status: int) -> None:
    """Count one answered request by HTTP status."""
    request_count.labels(status=str(status)).inc()


def track_retrieval_attempt(outcome: str) -> None:
    """Count one retrieval attempt (success, shape_mismatch, hard_failure)."""
    retrieval_attempts.labels(outcome=outcome).inc()


def track_upstream_latency(service: str, seconds: float) -> None:
    upstream_latency.labels(service=service).observe(seconds)


def track_empty_evidence() -> None:
    empty_evidence.inc()


def get_metrics() -> bytes:
    """Prometheus exposition payload."""
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
