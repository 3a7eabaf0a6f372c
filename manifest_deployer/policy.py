"""Ownership policy decisions for a single managed resource."""
from enum import Enum
from typing import Mapping, Optional

from manifest_deployer.models import MANAGED_DEPLOY_ITEM_LABEL, MANAGED_INSTANCE_LABEL, ManifestPolicy


class Decision(str, Enum):
    CREATE = "create"
    APPLY = "apply"
    SKIP = "skip"


def decide(policy: ManifestPolicy, exists: bool, owned: bool) -> Decision:
    if policy == ManifestPolicy.IGNORE:
        return Decision.SKIP
    if not exists:
        return Decision.CREATE
    if policy == ManifestPolicy.FALLBACK and not owned:
        return Decision.SKIP
    return Decision.APPLY


def is_owned(labels: Optional[Mapping[str, str]], instance_id: str, deploy_item: str) -> bool:
    """True if the live labels name this instance and this deploy item."""
    labels = labels or {}
    return (
        labels.get(MANAGED_DEPLOY_ITEM_LABEL) == deploy_item
        and labels.get(MANAGED_INSTANCE_LABEL) == instance_id
    )
