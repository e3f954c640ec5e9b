"""Prometheus metrics for the messaging and notification pipeline."""

from prometheus_client import Counter, Histogram

messages_total = Counter(
    "ume_messages_total",
    "Message store operations by outcome",
    ["operation", "result"],
)

messages_marked_read_total = Counter(
    "ume_messages_marked_read_total",
    "Number of message rows flipped to read",
)

conversation_recompute_failures_total = Counter(
    "ume_conversation_recompute_failures_total",
    "Conversation aggregate recomputations that failed and await reconciliation",
)

notification_dispatch_total = Counter(
    "ume_notification_dispatch_total",
    "Message notification dispatch outcomes",
    ["outcome"],
)

notifications_created_total = Counter(
    "ume_notifications_created_total",
    "In-app notifications created by type",
    ["type"],
)

email_send_total = Counter(
    "ume_email_send_total",
    "Outbound email attempts by result",
    ["result"],
)

email_send_duration_seconds = Histogram(
    "ume_email_send_duration_seconds",
    "Duration of outbound email transport calls",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

relay_events_published_total = Counter(
    "ume_relay_events_published_total",
    "Change events published to the realtime relay",
    ["table", "event_type"],
)

relay_callback_errors_total = Counter(
    "ume_relay_callback_errors_total",
    "Subscriber callbacks that raised while handling a change event",
    ["table"],
)
