"""Prometheus metrics for the swarm agent.

Counters and gauges live at module level so the supervisor and the label
watcher can record events without passing metric objects around. The
endpoint is only started when a metrics port is configured; the default
registry also carries the process and platform collectors.
"""
import logging
from typing import Tuple

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

CONNECTION_ATTEMPTS = Counter(
    "swarm_agent_connection_attempts_total",
    "Connection attempts, labeled by outcome (failed or closed).",
    labelnames=("outcome",),
)

CONNECTED = Gauge(
    "swarm_agent_connected",
    "1 while the execution channel to the coordinator is open.",
)

RETRY_ATTEMPT = Gauge(
    "swarm_agent_retry_attempt",
    "Number of failed or closed connection attempts so far.",
)

BACKOFF_SECONDS = Counter(
    "swarm_agent_backoff_seconds_total",
    "Seconds spent waiting between connection attempts.",
)

LABEL_UPDATES = Counter(
    "swarm_agent_label_updates_total",
    "Label file changes pushed to the coordinator, labeled by kind (soft or hard) and outcome.",
    labelnames=("kind", "outcome"),
)


def start_metrics_server(port: int, addr: str = "0.0.0.0") -> Tuple:
    """
    Serve the default registry over HTTP.

    Args:
        port: TCP port to listen on
        addr: Address to bind

    Returns:
        (server, thread) as returned by prometheus_client

    Raises:
        OSError: If the port cannot be bound
    """
    server, thread = start_http_server(port, addr=addr)
    logger.info(f"Prometheus metrics on port {port}")
    return server, thread
