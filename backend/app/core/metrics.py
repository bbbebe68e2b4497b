"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'pronostics_webhook_events_total',
        'Total number of Stripe webhook events received',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('pronostics_webhook_events_total')

try:
    webhook_rejections_counter = Counter(
        'pronostics_webhook_rejections_total',
        'Total number of Stripe webhooks rejected before processing',
        ['reason']
    )
except ValueError:
    webhook_rejections_counter = REGISTRY._names_to_collectors.get('pronostics_webhook_rejections_total')

# Pull-path metrics
try:
    session_sync_counter = Counter(
        'pronostics_session_sync_total',
        'Total number of checkout session sync requests',
        ['outcome']
    )
except ValueError:
    session_sync_counter = REGISTRY._names_to_collectors.get('pronostics_session_sync_total')

# Background task metrics
try:
    cache_resync_counter = Counter(
        'pronostics_cache_resync_total',
        'Total number of user subscription cache resync tasks',
        ['status']
    )
except ValueError:
    cache_resync_counter = REGISTRY._names_to_collectors.get('pronostics_cache_resync_total')

try:
    expiry_sweep_counter = Counter(
        'pronostics_expired_subscriptions_total',
        'Total number of subscriptions expired by the scheduler'
    )
except ValueError:
    expiry_sweep_counter = REGISTRY._names_to_collectors.get('pronostics_expired_subscriptions_total')
