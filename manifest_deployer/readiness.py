"""
Readiness checks for managed resources.

The prober polls every tracked resource with a bounded backoff until all of
them report ready. What "ready" means is decided per kind by a
ReadinessRegistry; kinds without a registered check are ready as soon as
they exist.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from manifest_deployer.errors import CancelledError, ClientError, NotFoundError, ReadinessTimeoutError
from manifest_deployer.models import ManagedResourceStatus, ManifestPolicy, TypedReference
from manifest_deployer.services.kubernetes_service import ResourceStore

logger = logging.getLogger("readiness")

ReadinessCheck = Callable[[dict], bool]


@dataclass(frozen=True)
class Backoff:
    """Retry budget: up to `steps` checks, `duration` seconds apart.

    With factor > 0 every wait is `factor` times the previous one; with
    factor 0 the interval is constant.
    """
    duration: float
    factor: float = 0
    steps: int = 1

    def delays(self) -> Iterator[float]:
        delay = self.duration
        for _ in range(max(self.steps - 1, 0)):
            yield delay
            if self.factor > 0:
                delay *= self.factor


# ---------------------------------------------------------------------------
# Per-kind checks
# ---------------------------------------------------------------------------

def _generation_observed(obj: dict) -> bool:
    generation = (obj.get("metadata") or {}).get("generation")
    observed = (obj.get("status") or {}).get("observedGeneration")
    return generation is None or observed == generation


def _replicas_ready(obj: dict) -> bool:
    if not _generation_observed(obj):
        return False
    desired = (obj.get("spec") or {}).get("replicas", 1)
    status = obj.get("status") or {}
    return (status.get("readyReplicas") or 0) == desired


def _daemonset_ready(obj: dict) -> bool:
    if not _generation_observed(obj):
        return False
    status = obj.get("status") or {}
    return (status.get("numberReady") or 0) == (status.get("desiredNumberScheduled") or 0)


def _pod_ready(obj: dict) -> bool:
    status = obj.get("status") or {}
    if status.get("phase") == "Succeeded":
        return True
    if status.get("phase") != "Running":
        return False
    return all(cs.get("ready") for cs in status.get("containerStatuses") or [])


def _job_ready(obj: dict) -> bool:
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == "Complete" and cond.get("status") == "True":
            return True
    return False


def _pvc_ready(obj: dict) -> bool:
    return (obj.get("status") or {}).get("phase") == "Bound"


class ReadinessRegistry:
    def __init__(self):
        self._checks: dict[str, ReadinessCheck] = {}

    def register(self, kind: str, check: ReadinessCheck) -> None:
        self._checks[kind] = check

    def is_ready(self, obj: dict) -> bool:
        check = self._checks.get(obj.get("kind", ""))
        return True if check is None else check(obj)


def default_registry() -> ReadinessRegistry:
    registry = ReadinessRegistry()
    registry.register("Deployment", _replicas_ready)
    registry.register("StatefulSet", _replicas_ready)
    registry.register("ReplicaSet", _replicas_ready)
    registry.register("DaemonSet", _daemonset_ready)
    registry.register("Pod", _pod_ready)
    registry.register("Job", _job_ready)
    registry.register("PersistentVolumeClaim", _pvc_ready)
    return registry


# ---------------------------------------------------------------------------
# Prober
# ---------------------------------------------------------------------------

class ReadinessProber:
    def __init__(self, store: ResourceStore, registry: Optional[ReadinessRegistry] = None,
                 cancel: Optional[threading.Event] = None):
        self.store = store
        self.registry = registry or default_registry()
        self.cancel = cancel or threading.Event()
        self._last_error: Optional[ClientError] = None

    def probe(self, resources: list[ManagedResourceStatus], backoff: Backoff) -> None:
        """Wait for all non-ignored resources to become ready.

        Transient read failures count as "not ready" for that check. Raises
        ReadinessTimeoutError naming the unready resources (and the last read
        failure) once the backoff is exhausted, ClientError for a read that
        cannot succeed on retry, CancelledError if cancelled.
        """
        self._last_error = None
        tracked = [mr.resource for mr in resources if mr.policy != ManifestPolicy.IGNORE]
        delays = backoff.delays()
        attempt = 0
        while True:
            attempt += 1
            unready = [ref for ref in tracked if not self._ready(ref)]
            if not unready:
                logger.debug(f"All {len(tracked)} resource(s) ready after {attempt} check(s)")
                return
            logger.debug(f"Check {attempt}: {len(unready)} resource(s) not ready")
            delay = next(delays, None)
            if delay is None:
                raise ReadinessTimeoutError([str(ref) for ref in unready], last_error=self._last_error)
            if self.cancel.wait(delay):
                raise CancelledError("readiness check cancelled")

    def _ready(self, ref: TypedReference) -> bool:
        try:
            obj = self.store.get(ref.apiVersion, ref.kind, ref.name, ref.namespace)
        except NotFoundError:
            return False
        except ClientError as e:
            if not e.retryable:
                raise
            logger.debug(f"Unable to read {ref}: {e}")
            self._last_error = e
            return False
        return self.registry.is_ready(obj)
