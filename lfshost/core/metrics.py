"""Prometheus metrics for the LFS batch API.

Metrics Categories:
- Batch Requests: Whole-request outcomes per operation
- Objects: Per-object results inside a batch
- Authentication: Decisions made by the configured authenticator
"""

from prometheus_client import Counter, Histogram


LFS_BATCH_REQUESTS_TOTAL = Counter(
    "lfshost_batch_requests_total",
    "Total batch requests handled",
    ["operation", "outcome"]  # outcome: ok, unauthorized, malformed
)

LFS_BATCH_OBJECTS_TOTAL = Counter(
    "lfshost_batch_objects_total",
    "Objects processed inside batch requests",
    ["operation", "result"]  # result: action, present, invalid, not_found, size_mismatch, unavailable
)

LFS_BATCH_DURATION_SECONDS = Histogram(
    "lfshost_batch_duration_seconds",
    "Time spent assembling a batch response",
    ["operation"]
)

LFS_AUTH_DECISIONS_TOTAL = Counter(
    "lfshost_auth_decisions_total",
    "Authentication decisions",
    ["authenticator", "decision"]
)
