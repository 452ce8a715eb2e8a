"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-importing the module (tests, reloads) must not double-register
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Ledger metrics
contributions_applied_counter = _counter(
    'wishfund_contributions_applied_total',
    'Total number of confirmed payments applied to item ledgers'
)

contributions_duplicate_counter = _counter(
    'wishfund_contributions_duplicate_total',
    'Total number of replayed payment confirmations ignored by the ledger'
)

# Fulfillment metrics
fulfillments_counter = _counter(
    'wishfund_fulfillments_total',
    'Fulfillment state transitions',
    ['status']
)

fulfillment_rejections_counter = _counter(
    'wishfund_fulfillment_rejections_total',
    'Redemption requests rejected before a transfer was attempted',
    ['code']
)

transfer_failures_counter = _counter(
    'wishfund_transfer_failures_total',
    'Transfers rejected by the payout provider',
    ['code']
)

# Webhook metrics
webhook_events_counter = _counter(
    'wishfund_webhook_events_total',
    'Stripe webhook events received',
    ['event_type', 'status']
)

# Reconciliation metrics
reconciliation_runs_counter = _counter(
    'wishfund_reconciliation_runs_total',
    'Reconciliation passes over stale pending fulfillments',
    ['status']
)

reconciled_fulfillments_counter = _counter(
    'wishfund_reconciled_fulfillments_total',
    'Fulfillments settled by reconciliation',
    ['outcome']
)
