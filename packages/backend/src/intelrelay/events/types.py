"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover every event the delivery subsystem emits.
"""

# ─── Delivery lifecycle ──────────────────────────────────

DELIVERY_QUEUED = "delivery.queued"
DELIVERY_SENT = "delivery.sent"
DELIVERY_FAILED = "delivery.failed"
DELIVERY_STALE_FAILED = "delivery.stale_failed"
