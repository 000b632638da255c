from prometheus_client import Counter, Histogram
# Prometheus metrics definitions

# Estimate requests by endpoint (text, photo)
estimate_requests_total = Counter(
    "estimate_requests_total", "Total estimate requests", ["kind"]
)

# Provider round-trip buckets; photo calls take longer
_estimate_latency_buckets = (
    0.5,
    1.0,
    2.0,
    4.0,
    8.0,
    16.0,
    32.0,
)

estimate_latency_seconds = Histogram(
    "estimate_latency_seconds",
    "Estimate latency",
    ["kind"],
    buckets=_estimate_latency_buckets,
)

# Requests refused by the daily free limit
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected requests"
)

# Upstream failures (OpenAI, Open Food Facts) by kind:
# timeout, status, connection, invalid, other
upstream_error_total = Counter(
    "upstream_error_total", "Total upstream provider errors", ["kind"]
)

# History writes that failed after a successful estimate
persist_fail_total = Counter(
    "persist_fail_total", "Total estimates not saved to history"
)

# Stripe webhook rejects (missing or bad signature)
webhook_rejected_total = Counter(
    "webhook_rejected_total", "Total rejected webhook requests"
)

# RevenueCat reconciliation failures
entitlement_sync_fail_total = Counter(
    "entitlement_sync_fail_total", "Total entitlement sync failures"
)

__all__ = [
    "estimate_requests_total",
    "estimate_latency_seconds",
    "quota_reject_total",
    "upstream_error_total",
    "persist_fail_total",
    "webhook_rejected_total",
    "entitlement_sync_fail_total",
]
