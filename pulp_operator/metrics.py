"""
Prometheus metrics for reconciliation outcomes.
"""
import logging

from prometheus_client import Counter, start_http_server

logger = logging.getLogger("pulp_operator.metrics")

RESOURCES_CREATED = Counter(
    "pulp_operator_resources_created_total",
    "Managed sub-resources created",
    ["kind"],
)
RESOURCES_UPDATED = Counter(
    "pulp_operator_resources_updated_total",
    "Managed sub-resources updated after drift was detected",
    ["kind"],
)
RECONCILE_ERRORS = Counter(
    "pulp_operator_reconcile_errors_total",
    "Lookup or apply failures during a reconciliation pass",
    ["kind"],
)
POD_RESTARTS = Counter(
    "pulp_operator_pod_restarts_total",
    "Rolling restarts forced by a shared configuration change",
    ["workload"],
)

_server_started = False


def start_metrics_server(port: int):
    """Expose /metrics on ``port`` once per process. A zero port disables it."""
    global _server_started
    if _server_started or not port:
        return
    start_http_server(port)
    _server_started = True
    logger.info(f"Prometheus metrics exposed on :{port}")
