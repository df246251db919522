"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
These are live load counters only; the acknowledgment log files stay the
durable record.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server


# Sender metrics
STRESS_SENT_TOTAL = Counter(
    "stress_sent_total", "Total messages submitted to the transport"
)
STRESS_ACKNOWLEDGED_TOTAL = Counter(
    "stress_acknowledged_total", "Total sends confirmed by the broker"
)
STRESS_SEND_FAILED_TOTAL = Counter(
    "stress_send_failed_total", "Total sends that failed", ["reason"]
)
STRESS_ACK_LATENCY_SECONDS = Histogram(
    "stress_ack_latency_seconds",
    "Time from submission to broker confirmation",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

# Receiver metrics
STRESS_RECEIVED_TOTAL = Counter(
    "stress_received_total", "Total messages delivered to the handler"
)
STRESS_HANDLER_ERRORS_TOTAL = Counter(
    "stress_handler_errors_total", "Total exceptions reported by phase", ["phase"]
)

# Log sink metrics
ACK_LOG_WRITE_FAILED_TOTAL = Counter(
    "ack_log_write_failed_total", "Total log records dropped due to write failures"
)

# Proxy metrics
PROXY_CONNECT_FAILED_TOTAL = Counter(
    "proxy_connect_failed_total", "Total failed connections through a selected route"
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
