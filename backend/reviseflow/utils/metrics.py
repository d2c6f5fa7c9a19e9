"""
Prometheus metrics definitions for the API.
All metrics are registered here and can be imported by other modules.
"""
from prometheus_client import Counter, Histogram

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Error metrics
errors_total = Counter(
    'errors_total',
    'Total errors',
    ['error_type']
)

# Request guard metrics
guard_rejections_total = Counter(
    'guard_rejections_total',
    'Requests rejected by the rate/origin guard',
    ['reason']
)

# Quota metrics
quota_reservations_total = Counter(
    'quota_reservations_total',
    'Token reservation attempts by outcome',
    ['model', 'outcome']
)

quota_adjustments_total = Counter(
    'quota_adjustments_total',
    'Post-call reservation adjustments',
    ['model', 'direction']
)

quota_rollbacks_total = Counter(
    'quota_rollbacks_total',
    'Reservation rollbacks after a failed provider call',
    ['model', 'status']
)

image_quota_total = Counter(
    'image_quota_total',
    'Image quota consumption attempts by outcome',
    ['model', 'outcome']
)

# Webhook metrics
webhook_events_total = Counter(
    'webhook_events_total',
    'Billing webhook events by type and outcome',
    ['event_type', 'outcome']
)

# AI provider metrics
ai_provider_requests_total = Counter(
    'ai_provider_requests_total',
    'Total AI provider requests',
    ['provider', 'operation']
)

ai_provider_failures_total = Counter(
    'ai_provider_failures_total',
    'Total AI provider failures',
    ['provider', 'operation']
)

ai_provider_latency_seconds = Histogram(
    'ai_provider_latency_seconds',
    'AI provider request latency in seconds',
    ['provider', 'operation'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0]
)

ai_provider_tokens_total = Counter(
    'ai_provider_tokens_total',
    'Total AI provider tokens used',
    ['provider', 'operation', 'token_type']
)
