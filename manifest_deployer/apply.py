"""
Apply engine — applies one desired object to the target cluster.

Per object:
  1. Read the live object (absent is fine)
  2. Ask the policy evaluator what to do
  3. Stamp the identity labels
  4. Create, or merge server-owned fields from the live object and
     update/patch according to the update strategy

Exactly one write per object for create/apply, none for skip.
"""

import copy
import logging
from typing import Optional

from manifest_deployer import metrics
from manifest_deployer.errors import ConfigurationError, NotFoundError
from manifest_deployer.models import (
    MANAGED_DEPLOY_ITEM_LABEL,
    MANAGED_INSTANCE_LABEL,
    ManifestPolicy,
    UpdateStrategy,
)
from manifest_deployer.policy import Decision, decide, is_owned
from manifest_deployer.services.kubernetes_service import ResourceStore, describe

logger = logging.getLogger("apply_engine")

# Server-populated fields per kind, copied from the live object when the
# desired object leaves them unset. Changing them would be rejected.
_SERVER_FIELDS = {
    "Service": [("spec", "clusterIP"), ("spec", "clusterIPs"), ("spec", "healthCheckNodePort")],
    "PersistentVolumeClaim": [("spec", "volumeName")],
    "Job": [("spec", "selector")],
}


def _get_path(obj: dict, path: tuple) -> Optional[object]:
    for key in path:
        if not isinstance(obj, dict) or key not in obj:
            return None
        obj = obj[key]
    return obj


def _set_path(obj: dict, path: tuple, value) -> None:
    for key in path[:-1]:
        obj = obj.setdefault(key, {})
    obj[path[-1]] = value


def set_required_fields(live: dict, desired: dict) -> None:
    """Merge resourceVersion, uid and kind-specific server fields into desired."""
    live_meta = live.get("metadata") or {}
    meta = desired.setdefault("metadata", {})
    for key in ("resourceVersion", "uid"):
        if live_meta.get(key):
            meta[key] = live_meta[key]

    for path in _SERVER_FIELDS.get(desired.get("kind"), []):
        if _get_path(desired, path) is None:
            value = _get_path(live, path)
            if value is not None:
                _set_path(desired, path, copy.deepcopy(value))


def stamp_labels(obj: dict, instance_id: str, deploy_item: str) -> None:
    labels = obj.setdefault("metadata", {}).get("labels") or {}
    labels[MANAGED_INSTANCE_LABEL] = instance_id
    labels[MANAGED_DEPLOY_ITEM_LABEL] = deploy_item
    obj["metadata"]["labels"] = labels


class ApplyEngine:
    """Applies desired objects on behalf of one deploy item."""

    def __init__(self, store: ResourceStore, deploy_item: str, instance_id: str,
                 update_strategy: UpdateStrategy = UpdateStrategy.UPDATE):
        self.store = store
        self.deploy_item = deploy_item
        self.instance_id = instance_id
        try:
            self.update_strategy = UpdateStrategy(update_strategy)
        except ValueError:
            raise ConfigurationError(f"{update_strategy} is not a valid update strategy") from None

    def apply_object(self, policy: ManifestPolicy, desired: dict) -> Optional[dict]:
        """Apply desired according to policy.

        Returns the object as the cluster now has it (the server response
        for writes, the untouched live object for skips, None when ignored).
        Raises ClientError on store failures and ConfigurationError for an
        unknown update strategy.
        """
        if policy == ManifestPolicy.IGNORE:
            return None

        what = describe(desired)
        meta = desired.get("metadata") or {}
        try:
            live = self.store.get(
                desired["apiVersion"], desired["kind"], meta["name"], meta.get("namespace", "")
            )
        except NotFoundError:
            live = None

        owned = live is not None and is_owned(
            (live.get("metadata") or {}).get("labels"), self.instance_id, self.deploy_item
        )
        decision = decide(policy, live is not None, owned)

        if decision == Decision.SKIP:
            logger.info(f"{what} is already managed by another owner — skipping")
            metrics.record_resource("skip")
            return live

        stamp_labels(desired, self.instance_id, self.deploy_item)

        if decision == Decision.CREATE:
            created = self.store.create(desired)
            logger.info(f"{what} created")
            metrics.record_resource("create")
            return created

        set_required_fields(live, desired)
        if self.update_strategy == UpdateStrategy.UPDATE:
            result = self.store.update(desired)
        elif self.update_strategy == UpdateStrategy.PATCH:
            result = self.store.patch(live, desired)
        else:
            raise ConfigurationError(f"{self.update_strategy} is not a valid update strategy")
        logger.info(f"{what} applied ({self.update_strategy.value})")
        metrics.record_resource(self.update_strategy.value)
        return result
