"""
Manifest Deployer — Kubernetes Operator for manifest DeployItems

Architecture:
  DeployItem CRD (type kubernetes-manifest) → Operator watches → handlers:
    create / spec update / resume:
      1. Ensure finalizer
      2. Reconcile: apply manifests, clean up orphans, persist provider status
      3. Check health: wait for managed resources → phase Succeeded

    delete:
      1. Delete every managed resource (ignore/keep policies excepted)
      2. Requeue until all are gone, then release the finalizer

    timer:
      Re-check health of Succeeded items so degraded resources surface in
      lastError.

Retry model:
  - Retryable deployer errors → kopf.TemporaryError (requeued with delay)
  - Bad configuration / manifests → kopf.PermanentError (phase Failed)

Usage:
  kopf run -m manifest_deployer.operator --all-namespaces
"""

import kopf

from manifest_deployer import events
from manifest_deployer.config import settings as deployer_settings
from manifest_deployer.errors import DeployerError, IncompleteDeletionError
from manifest_deployer.lifecycle import DeployItemController
from manifest_deployer.models import DeployItem, Phase
from manifest_deployer.services.kubernetes_service import (
    KubernetesDeployItemStore,
    KubernetesResourceStore,
)

CRD_GROUP = deployer_settings.CRD_GROUP
CRD_VERSION = deployer_settings.CRD_VERSION
CRD_PLURAL = deployer_settings.CRD_PLURAL


def is_manifest_item(spec, **_) -> bool:
    return spec.get("type") == deployer_settings.DEPLOY_ITEM_TYPE


def _controller(body) -> DeployItemController:
    item = DeployItem.from_body(body)
    return DeployItemController(
        item,
        store=KubernetesResourceStore(),
        host=KubernetesDeployItemStore(),
    )


def _requeue(err: DeployerError):
    """Translate a deployer error into kopf's retry semantics."""
    if err.retryable:
        return kopf.TemporaryError(str(err), delay=deployer_settings.RETRY_DELAY)
    return kopf.PermanentError(str(err))


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, logger, **kwargs):
    settings.posting.enabled = True
    # kopf's own marker; the DeployItem finalizer is managed by the controller
    settings.persistence.finalizer = f"{CRD_PLURAL}.{CRD_GROUP}/manifest-deployer"
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix="manifest.deployer.landscaper.gardener.cloud"
    )
    settings.execution.max_workers = deployer_settings.MAX_PARALLEL_RECONCILES
    logger.info(
        f"Manifest deployer started (instance={deployer_settings.INSTANCE_ID}, "
        f"max_workers={deployer_settings.MAX_PARALLEL_RECONCILES})"
    )


# ---------------------------------------------------------------------------
# CREATE / UPDATE / RESUME handler
# ---------------------------------------------------------------------------

@kopf.on.create(CRD_GROUP, CRD_VERSION, CRD_PLURAL, when=is_manifest_item)
@kopf.on.update(CRD_GROUP, CRD_VERSION, CRD_PLURAL, field="spec", when=is_manifest_item)
@kopf.on.resume(CRD_GROUP, CRD_VERSION, CRD_PLURAL, when=is_manifest_item)
def reconcile_deploy_item(body, name, namespace, logger, **kwargs):
    """
    Reconcile a DeployItem to its desired manifests and wait for readiness.

    Idempotent: every pass re-applies all manifests and recomputes orphans
    from the persisted provider status.
    """
    controller = _controller(body)
    if controller.item.deletionTimestamp:
        return
    try:
        controller.ensure_finalizer()
        controller.reconcile()
        controller.check_resources_health()
    except DeployerError as e:
        logger.warning(f"DeployItem {namespace}/{name}: {e}")
        raise _requeue(e)
    return {"phase": controller.item.phase.value}


# ---------------------------------------------------------------------------
# DELETE handler — teardown with finalizer guarantee
# ---------------------------------------------------------------------------

@kopf.on.delete(CRD_GROUP, CRD_VERSION, CRD_PLURAL, when=is_manifest_item)
def delete_deploy_item(body, name, namespace, logger, **kwargs):
    """
    Delete every managed resource, then release the finalizer.

    A pass that still had to delete something raises TemporaryError, so the
    next pass observes the removal before the finalizer goes.
    """
    controller = _controller(body)
    try:
        controller.delete()
    except IncompleteDeletionError as e:
        logger.info(f"DeployItem {namespace}/{name}: {e} — requeueing")
        raise kopf.TemporaryError(str(e), delay=deployer_settings.RETRY_DELAY)
    except DeployerError as e:
        logger.warning(f"DeployItem {namespace}/{name}: teardown failed: {e}")
        raise _requeue(e)
    events.drop_events(namespace, name)


# ---------------------------------------------------------------------------
# TIMER — periodic health checks
# ---------------------------------------------------------------------------

@kopf.timer(CRD_GROUP, CRD_VERSION, CRD_PLURAL, when=is_manifest_item,
            interval=deployer_settings.HEALTH_TIMER_INTERVAL,
            idle=deployer_settings.HEALTH_TIMER_INTERVAL)
def check_deploy_item_health(body, name, namespace, status, logger, **kwargs):
    """Re-check readiness of Succeeded items; failures land in lastError."""
    if status.get("phase") != Phase.SUCCEEDED.value:
        return
    controller = _controller(body)
    try:
        controller.check_resources_health()
    except DeployerError as e:
        logger.warning(f"Health check failed for DeployItem {namespace}/{name}: {e}")
