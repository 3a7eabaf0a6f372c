"""
Lifecycle controller — drives one DeployItem through reconcile, health
check and delete.

Phases:
  Progressing → Succeeded   (resources applied and ready)
  Progressing → Failed      (unrecoverable: bad configuration, manifest or
                             provider status)
  any         → Deleting    (deletion requested)
  Deleting    → finalizer removed once every owned resource is gone

The provider status is decoded once at the start of each entry point and
written once at the end of a successful reconcile. Every failure is written
to the item's lastError (with the previous provider status untouched)
before the error is raised to the caller for requeueing.
"""

import logging
import threading
from typing import Optional

from manifest_deployer import events, metrics
from manifest_deployer.apply import ApplyEngine
from manifest_deployer.config import Settings, settings as default_settings
from manifest_deployer.errors import (
    CancelledError,
    ClientError,
    DecodeError,
    DeployerError,
    IncompleteDeletionError,
    NotFoundError,
)
from manifest_deployer.models import (
    DeployItem,
    ManagedResourceStatus,
    ManifestPolicy,
    Phase,
    ProviderConfiguration,
    ProviderStatus,
    TypedReference,
    decode_status,
    encode_status,
    updated_error,
)
from manifest_deployer.orphans import OrphanReconciler
from manifest_deployer.readiness import Backoff, ReadinessProber, ReadinessRegistry
from manifest_deployer.services.kubernetes_service import DeployItemStore, ResourceStore, describe

logger = logging.getLogger("lifecycle")


class DeployItemController:
    def __init__(self, item: DeployItem, store: ResourceStore, host: DeployItemStore,
                 settings: Optional[Settings] = None,
                 registry: Optional[ReadinessRegistry] = None,
                 cancel: Optional[threading.Event] = None):
        self.item = item
        self.store = store
        self.host = host
        self.settings = settings or default_settings
        self.registry = registry
        self.cancel = cancel or threading.Event()

    @property
    def key(self) -> str:
        return f"{self.item.namespace}/{self.item.name}"

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def reconcile(self) -> None:
        """Apply all manifests, clean up orphans and persist the new status."""
        op = "ReconcileManifests"
        item = self.item
        item.phase = Phase.PROGRESSING
        events.publish(item.namespace, item.name, "RECONCILE_START", "Reconciling manifests", item.phase.value)

        try:
            previous = decode_status(item.providerStatus)
        except DecodeError as e:
            self._fail(op, "DecodeProviderStatus", e, terminal=True)
            raise
        try:
            configuration = ProviderConfiguration.decode(item.config)
            engine = ApplyEngine(self.store, item.name, self.settings.INSTANCE_ID,
                                 configuration.updateStrategy)
        except DeployerError as e:
            self._fail(op, "DecodeProviderConfiguration", e, terminal=True)
            raise

        objects = []
        for i, entry in enumerate(configuration.manifests):
            try:
                objects.append(entry.decode())
            except DecodeError as e:
                err = DecodeError(f"error while decoding manifest at index {i}: {e}")
                self._fail(op, "DecodeManifest", err, terminal=True)
                raise err from e

        status = ProviderStatus(managedResources=[
            ManagedResourceStatus(policy=entry.policy, resource=TypedReference.from_object(obj))
            for entry, obj in zip(configuration.manifests, objects)
        ])

        # Ignored manifests stay in the current set so a previously managed
        # resource switched to ignore is never treated as an orphan.
        current = []
        for entry, obj in zip(configuration.manifests, objects):
            self._check_cancelled("ApplyObjects")
            if entry.policy == ManifestPolicy.IGNORE:
                current.append(obj)
                continue
            what = describe(obj)
            try:
                current.append(engine.apply_object(entry.policy, obj))
            except DeployerError as e:
                self._fail("ApplyObjects", "ApplyObject", e, message=f"unable to apply {what}: {e}",
                           terminal=True)
                raise

        if previous is not None:
            self._check_cancelled(op)
            reconciler = OrphanReconciler(
                self.store,
                delete_timeout=self.settings.DELETE_TIMEOUT_SECONDS,
                poll_interval=self.settings.DELETE_POLL_INTERVAL,
                max_workers=self.settings.MAX_PARALLEL_DELETIONS,
                cancel=self.cancel,
            )
            try:
                reconciler.reconcile(previous.managedResources, current)
            except DeployerError as e:
                self._fail(op, "CleanupOrphanedResources", e,
                           message=f"unable to cleanup orphaned resources: {e}", terminal=True)
                raise

        item.providerStatus = encode_status(status)
        try:
            self.host.update_status(item)
        except ClientError as e:
            self._fail(op, "UpdateStatus", e)
            raise
        logger.info(f"DeployItem {self.key}: {len(status.managedResources)} manifest(s) reconciled")
        events.publish(item.namespace, item.name, "RECONCILED",
                       f"{len(status.managedResources)} manifest(s) reconciled", item.phase.value)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_resources_health(self) -> None:
        """Wait for managed resources to be ready and mark the item Succeeded."""
        op = "CheckResourcesHealthManifests"
        item = self.item
        try:
            status = decode_status(item.providerStatus)
        except DecodeError as e:
            self._fail(op, "DecodeProviderStatus", e, terminal=True)
            raise

        if status is not None and status.managedResources:
            backoff = Backoff(
                duration=self.settings.HEALTH_CHECK_INTERVAL,
                factor=0,
                steps=self.settings.HEALTH_CHECK_STEPS,
            )
            prober = ReadinessProber(self.store, registry=self.registry, cancel=self.cancel)
            try:
                prober.probe(status.managedResources, backoff)
            except DeployerError as e:
                self._fail(op, "CheckResourcesReadiness", e)
                raise

        before = (item.phase, item.observedGeneration, item.lastError)
        item.phase = Phase.SUCCEEDED
        item.observedGeneration = item.generation
        item.lastError = None
        try:
            self.host.update_status(item)
        except ClientError as e:
            item.phase, item.observedGeneration, item.lastError = before
            self._fail(op, "UpdateStatus", e)
            raise
        logger.info(f"DeployItem {self.key} succeeded (generation {item.generation})")
        events.publish(item.namespace, item.name, "SUCCEEDED", "All resources ready", item.phase.value)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(self) -> None:
        """Tear down managed resources; release the finalizer once all are gone.

        Raises IncompleteDeletionError while deletions are still in flight.
        """
        op = "DeleteManifests"
        item = self.item
        item.phase = Phase.DELETING
        try:
            status = decode_status(item.providerStatus)
        except DecodeError as e:
            self._fail(op, "DecodeProviderStatus", e)
            raise

        if status is None or not status.managedResources:
            logger.info(f"DeployItem {self.key}: no managed resources — releasing finalizer")
            self._release(op)
            return

        completed = True
        for mr in status.managedResources:
            if not mr.policy.deletable:
                continue
            self._check_cancelled(op)
            try:
                self.store.delete(mr.resource.to_object())
            except NotFoundError:
                continue
            except ClientError as e:
                self._fail(op, "DeleteManifest", e)
                raise
            logger.info(f"DeployItem {self.key}: deleted {mr.resource}")
            metrics.record_delete("teardown")
            completed = False

        if not completed:
            err = IncompleteDeletionError()
            self._fail(op, "WaitForDeletion", err)
            raise err

        self._release(op)

    def ensure_finalizer(self) -> None:
        item = self.item
        if not item.add_finalizer(self.settings.FINALIZER):
            return
        try:
            self.host.update_finalizers(item)
        except ClientError as e:
            item.remove_finalizer(self.settings.FINALIZER)
            self._fail("ReconcileManifests", "AddFinalizer", e)
            raise
        logger.debug(f"DeployItem {self.key}: finalizer added")

    def _release(self, op: str) -> None:
        item = self.item
        item.lastError = None
        try:
            self.host.update_status(item)
        except ClientError as e:
            self._fail(op, "UpdateStatus", e)
            raise
        if item.remove_finalizer(self.settings.FINALIZER):
            try:
                self.host.update_finalizers(item)
            except ClientError as e:
                item.add_finalizer(self.settings.FINALIZER)
                self._fail(op, "RemoveFinalizer", e)
                raise
        logger.info(f"DeployItem {self.key}: teardown complete")
        events.publish(item.namespace, item.name, "DELETED", "Teardown complete", item.phase.value)

    # ------------------------------------------------------------------

    def _check_cancelled(self, operation: str) -> None:
        if self.cancel.is_set():
            err = CancelledError(f"{operation} cancelled")
            self._fail(operation, "Cancelled", err)
            raise err

    def _fail(self, operation: str, reason: str, err: DeployerError,
              message: Optional[str] = None, terminal: bool = False) -> None:
        """Record err on the item and persist it (provider status untouched).

        With terminal set, a non-retryable error moves the item to Failed.
        """
        item = self.item
        message = message or str(err)
        item.lastError = updated_error(item.lastError, operation, reason, message)
        if terminal and not err.retryable:
            item.phase = Phase.FAILED
        logger.error(f"DeployItem {self.key}: {operation}/{reason}: {message}")
        metrics.record_failure(operation)
        events.publish(item.namespace, item.name, reason, message, item.phase.value)
        try:
            self.host.update_status(item)
        except ClientError as e:
            logger.warning(f"DeployItem {self.key}: unable to record error in status: {e}")
