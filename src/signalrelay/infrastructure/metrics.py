# src/signalrelay/infrastructure/metrics.py
"""Prometheus collectors shared by the services; exposed by interfaces/api/metrics.py."""

from prometheus_client import Counter, Histogram

ALERTS_INGESTED = Counter("sr_alerts_ingested_total", "Alerts accepted by the webhook", ["signal"])
ALERTS_REJECTED = Counter("sr_alerts_rejected_total", "Webhook payloads rejected", ["reason"])
ALERTS_FINISHED = Counter("sr_alerts_finished_total", "Alerts that left processing", ["status"])

DELIVERIES = Counter("sr_deliveries_total", "Per-recipient delivery outcomes", ["outcome"])
DELIVERY_LATENCY = Histogram("sr_delivery_latency_seconds", "Time from claim to final outcome per recipient")

PAYMENT_TRANSITIONS = Counter("sr_payment_transitions_total", "Payment status changes", ["status"])
