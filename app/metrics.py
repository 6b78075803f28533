from prometheus_client import Counter, Histogram
# Prometheus metrics definitions

# Chat traffic
chat_messages_total = Counter(
    "chat_messages_total", "Chat messages stored", ["author"]
)

help_sessions_created_total = Counter(
    "help_sessions_created_total", "Help sessions opened"
)

help_sessions_closed_total = Counter(
    "help_sessions_closed_total", "Help sessions closed"
)

# Rejects when the free chat allowance is exhausted
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected requests"
)

# Open-session conflicts (second session while one is open)
session_conflict_total = Counter(
    "session_conflict_total", "New-session attempts rejected by an open session"
)

# Metered billing
usage_report_total = Counter(
    "usage_report_total", "Metered usage reported to Stripe"
)
usage_report_fail_total = Counter(
    "usage_report_fail_total", "Metered usage reports that failed"
)

# Summaries generated on close; fallback counter includes timeouts
_summary_buckets = (
    0.5,
    1.0,
    2.0,
    4.0,
    8.0,
    16.0,
)

summary_latency_seconds = Histogram(
    "summary_latency_seconds", "Session summary latency", buckets=_summary_buckets
)
summary_fallback_total = Counter(
    "summary_fallback_total", "Session closes that used the fallback recap"
)

# Support notifications
sms_fail_total = Counter(
    "sms_fail_total", "Support SMS notifications that failed"
)

# Webhook rejects (signature)
webhook_forbidden_total = Counter(
    "webhook_forbidden_total", "Total forbidden webhook requests"
)

__all__ = [
    "chat_messages_total",
    "help_sessions_created_total",
    "help_sessions_closed_total",
    "quota_reject_total",
    "session_conflict_total",
    "usage_report_total",
    "usage_report_fail_total",
    "summary_latency_seconds",
    "summary_fallback_total",
    "sms_fail_total",
    "webhook_forbidden_total",
]
