"""Prometheus metrics for the Chatwoot sync engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

WHATSAPP_EVENTS = Counter(
    "chatwoot_whatsapp_events_total",
    "WhatsApp events processed toward Chatwoot",
    ["state"],  # echo_tagged, skipped, dropped, resolution_failed, dispatch_failed
)

WEBHOOK_EVENTS = Counter(
    "chatwoot_webhook_events_total",
    "Chatwoot webhook events processed",
    ["event", "status"],  # status: ignored, echo, sent, deleted, status_updated, failed
)

API_CALLS = Counter(
    "chatwoot_api_calls_total",
    "Chatwoot REST API calls",
    ["operation", "status"],  # status: ok, http_<code>, transport_error
)

SYNC_ITEMS = Counter(
    "chatwoot_sync_items_total",
    "Bulk sync items processed",
    ["job_type", "status"],  # status: imported, skipped, errors
)

PROCESSING_TIME = Histogram(
    "chatwoot_processing_seconds",
    "Time to process an inbound event",
    ["direction"],  # whatsapp, webhook
)

SYNC_FAILURES = Counter(
    "chatwoot_sync_failures_total",
    "Failures recorded for operator diagnostics",
    ["direction", "reason"],
)
