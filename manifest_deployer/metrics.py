"""Prometheus metrics for the deployer."""
from prometheus_client import Counter, Gauge

RESOURCES_APPLIED = Counter(
    "manifest_deployer_resources_applied_total",
    "Resource writes and skips performed by the apply engine",
    ["action"],
)
RESOURCES_DELETED = Counter(
    "manifest_deployer_resources_deleted_total",
    "Resources deleted by orphan cleanup or teardown",
    ["reason"],
)
LIFECYCLE_FAILURES = Counter(
    "manifest_deployer_lifecycle_failures_total",
    "Failed lifecycle operations",
    ["operation"],
)
DEPLOY_ITEMS = Gauge(
    "manifest_deployer_deploy_items",
    "Current DeployItems by phase",
    ["phase"],
)


def record_resource(action: str):
    RESOURCES_APPLIED.labels(action=action).inc()


def record_delete(reason: str):
    RESOURCES_DELETED.labels(reason=reason).inc()


def record_failure(operation: str):
    LIFECYCLE_FAILURES.labels(operation=operation).inc()


def update_phase_gauge(counts: dict):
    for phase, count in counts.items():
        DEPLOY_ITEMS.labels(phase=phase).set(count)
