"""
Orphan reconciler — removes previously managed resources that are no
longer rendered.

Deletions run concurrently on a thread pool. Each task hands back its own
error (or None) through its future; only the calling thread collects them,
after every task has finished.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from manifest_deployer import metrics
from manifest_deployer.errors import (
    AggregateError,
    CancelledError,
    ClientError,
    DeletionTimeoutError,
    DeployerError,
    NotFoundError,
)
from manifest_deployer.models import ManagedResourceStatus, TypedReference
from manifest_deployer.services.kubernetes_service import ResourceStore, describe

logger = logging.getLogger("orphan_reconciler")


def _group_kind(obj: dict) -> tuple[str, str]:
    group = (obj.get("apiVersion") or "").rpartition("/")[0]
    return group, obj.get("kind") or ""


def contains_object(obj: dict, objects: Iterable[Optional[dict]]) -> bool:
    """Whether obj is one of objects.

    Compares uids when both sides carry one, otherwise group/kind, name and
    namespace. The version is ignored so apps/v1 and apps/v1beta2 match.
    """
    meta = obj.get("metadata") or {}
    uid = meta.get("uid")
    for found in objects:
        if found is None:
            continue
        found_meta = found.get("metadata") or {}
        found_uid = found_meta.get("uid")
        if uid and found_uid:
            if uid == found_uid:
                return True
            continue
        if _group_kind(found) != _group_kind(obj):
            continue
        if (found_meta.get("name") == meta.get("name")
                and (found_meta.get("namespace") or "") == (meta.get("namespace") or "")):
            return True
    return False


class OrphanReconciler:
    def __init__(self, store: ResourceStore, delete_timeout: float = 60,
                 poll_interval: float = 5, max_workers: int = 10,
                 cancel: Optional[threading.Event] = None):
        self.store = store
        self.delete_timeout = delete_timeout
        self.poll_interval = poll_interval
        self.max_workers = max_workers
        self.cancel = cancel or threading.Event()

    def reconcile(self, previous: list[ManagedResourceStatus], current: list[Optional[dict]]) -> None:
        """Delete every previous resource missing from current.

        Raises AggregateError with every collected failure, or
        CancelledError if cancelled while waiting.
        """
        errors: list[Exception] = []
        orphans: list[dict] = []

        for mr in previous:
            if not mr.policy.deletable:
                continue
            try:
                live = self._get(mr.resource)
            except NotFoundError:
                continue
            except ClientError as e:
                errors.append(e)
                continue
            if contains_object(live, current):
                continue
            orphans.append(live)

        if orphans:
            logger.info(f"Deleting {len(orphans)} orphaned resource(s)")
            workers = max(1, min(self.max_workers, len(orphans)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(self._delete_and_wait, obj) for obj in orphans]
            # The executor context joins all tasks before results are read
            errors.extend(err for err in (f.result() for f in futures) if err is not None)

        if self.cancel.is_set():
            raise CancelledError("orphan cleanup cancelled")
        if errors:
            raise AggregateError(errors)

    def _get(self, ref: TypedReference) -> dict:
        return self.store.get(ref.apiVersion, ref.kind, ref.name, ref.namespace)

    def _delete_and_wait(self, obj: dict) -> Optional[DeployerError]:
        what = describe(obj)
        try:
            self.store.delete(obj)
        except NotFoundError:
            return None
        except ClientError as e:
            logger.warning(f"Unable to delete {what}: {e}")
            return ClientError(f"unable to delete {what}: {e}", status=e.status)
        logger.info(f"Deleted orphaned {what}")
        metrics.record_delete("orphan")
        return self.wait_for_deletion(obj)

    def wait_for_deletion(self, obj: dict) -> Optional[DeployerError]:
        """Poll until obj is gone. Returns the error that ended the wait, if any.

        An object found under the same name with a different uid is a new
        object; the one deleted is gone.
        """
        ref = TypedReference.from_object(obj)
        uid = (obj.get("metadata") or {}).get("uid")
        deadline = time.monotonic() + self.delete_timeout
        while True:
            try:
                found = self._get(ref)
            except NotFoundError:
                return None
            except ClientError as e:
                return e
            found_uid = (found.get("metadata") or {}).get("uid")
            if uid and found_uid and found_uid != uid:
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return DeletionTimeoutError(str(ref), self.delete_timeout)
            if self.cancel.wait(min(self.poll_interval, remaining)):
                return CancelledError(f"stopped waiting for deletion of {ref}")
