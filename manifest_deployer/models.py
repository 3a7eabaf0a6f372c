"""
Pydantic models for DeployItems, provider configuration and provider status,
plus the response models served by the status API.

The provider status is the only state carried between reconciles. It is
encoded once at the end of a successful pass and decoded once at the start
of every entry point; ``decode_status(encode_status(s)) == s`` always holds.
"""
import copy
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Union

import yaml
from pydantic import BaseModel, ValidationError

from manifest_deployer.errors import DecodeError

PROVIDER_API_VERSION = "manifest.deployer.landscaper.gardener.cloud/v1alpha2"
PROVIDER_STATUS_KIND = "ProviderStatus"

# Every resource created or updated by the deployer carries both labels.
MANAGED_INSTANCE_LABEL = "manifest.deployer.landscaper.gardener.cloud/instance"
MANAGED_DEPLOY_ITEM_LABEL = "manifest.deployer.landscaper.gardener.cloud/deployitem"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Phase(str, Enum):
    PENDING = "Pending"
    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DELETING = "Deleting"


_PHASES = {p.value for p in Phase}


class ManifestPolicy(str, Enum):
    MANAGE = "manage"
    IGNORE = "ignore"
    FALLBACK = "fallback"
    KEEP = "keep"

    @property
    def deletable(self) -> bool:
        """Whether removal from the render (or teardown) may delete the resource."""
        return self not in (ManifestPolicy.IGNORE, ManifestPolicy.KEEP)


class UpdateStrategy(str, Enum):
    UPDATE = "update"
    PATCH = "patch"


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------

class ManifestEntry(BaseModel):
    policy: ManifestPolicy = ManifestPolicy.MANAGE
    manifest: Union[dict, str, bytes]

    def decode(self) -> dict:
        """Return the manifest as an object dict. Raises DecodeError."""
        raw = self.manifest
        if isinstance(raw, (str, bytes)):
            try:
                obj = yaml.safe_load(raw)
            except yaml.YAMLError as e:
                raise DecodeError(f"invalid manifest: {e}") from e
        else:
            obj = raw
        if not isinstance(obj, dict):
            raise DecodeError("manifest is not an object")
        for key in ("apiVersion", "kind"):
            if not obj.get(key):
                raise DecodeError(f"manifest is missing '{key}'")
        if not (obj.get("metadata") or {}).get("name"):
            raise DecodeError("manifest is missing 'metadata.name'")
        # Decoded objects are mutated later (labels, merged fields)
        return copy.deepcopy(obj)


class ProviderConfiguration(BaseModel):
    apiVersion: Optional[str] = None
    kind: Optional[str] = None
    updateStrategy: UpdateStrategy = UpdateStrategy.UPDATE
    manifests: List[ManifestEntry] = []

    @classmethod
    def decode(cls, data: Any) -> "ProviderConfiguration":
        if data is None:
            return cls()
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise DecodeError(f"invalid provider configuration: {e}") from e


# ---------------------------------------------------------------------------
# Provider status
# ---------------------------------------------------------------------------

class TypedReference(BaseModel):
    apiVersion: str
    kind: str
    name: str
    namespace: str = ""

    @classmethod
    def from_object(cls, obj: dict) -> "TypedReference":
        meta = obj.get("metadata") or {}
        return cls(
            apiVersion=obj["apiVersion"],
            kind=obj["kind"],
            name=meta["name"],
            namespace=meta.get("namespace") or "",
        )

    def to_object(self) -> dict:
        """Minimal object addressing this reference."""
        meta = {"name": self.name}
        if self.namespace:
            meta["namespace"] = self.namespace
        return {"apiVersion": self.apiVersion, "kind": self.kind, "metadata": meta}

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


class ManagedResourceStatus(BaseModel):
    policy: ManifestPolicy = ManifestPolicy.MANAGE
    resource: TypedReference


class ProviderStatus(BaseModel):
    apiVersion: str = PROVIDER_API_VERSION
    kind: str = PROVIDER_STATUS_KIND
    managedResources: List[ManagedResourceStatus] = []


def encode_status(status: ProviderStatus) -> dict:
    return status.model_dump(mode="json")


def decode_status(raw: Any) -> Optional[ProviderStatus]:
    """Decode a persisted provider status blob. Empty blobs decode to None."""
    if raw is None or raw == "" or raw == b"" or raw == {}:
        return None
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise DecodeError(f"invalid provider status: {e}") from e
    try:
        status = ProviderStatus.model_validate(raw)
    except ValidationError as e:
        raise DecodeError(f"invalid provider status: {e}") from e
    if status.apiVersion != PROVIDER_API_VERSION or status.kind != PROVIDER_STATUS_KIND:
        raise DecodeError(
            f"unsupported provider status {status.apiVersion}, Kind={status.kind}"
        )
    return status


# ---------------------------------------------------------------------------
# DeployItem
# ---------------------------------------------------------------------------

class LastError(BaseModel):
    operation: str
    reason: str
    message: str
    lastTransitionTime: Optional[str] = None
    lastUpdateTime: Optional[str] = None


def updated_error(last: Optional[LastError], operation: str, reason: str, message: str) -> LastError:
    """Build a LastError, keeping the transition time if the same error repeats."""
    now = _now()
    transition = now
    if last is not None and last.operation == operation and last.reason == reason:
        transition = last.lastTransitionTime or now
    return LastError(
        operation=operation,
        reason=reason,
        message=message,
        lastTransitionTime=transition,
        lastUpdateTime=now,
    )


class DeployItem(BaseModel):
    name: str
    namespace: str = "default"
    type: str = ""
    generation: int = 0
    finalizers: List[str] = []
    deletionTimestamp: Optional[str] = None
    config: Optional[Any] = None
    phase: Phase = Phase.PENDING
    observedGeneration: int = 0
    lastError: Optional[LastError] = None
    providerStatus: Optional[Any] = None

    @classmethod
    def from_body(cls, body: Any) -> "DeployItem":
        """Build from a raw Kubernetes object (dict or kopf Body)."""
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}
        status = body.get("status") or {}
        phase = status.get("phase") or Phase.PENDING.value
        last_error = status.get("lastError")
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace") or "default",
            type=spec.get("type", ""),
            generation=meta.get("generation") or 0,
            finalizers=list(meta.get("finalizers") or []),
            deletionTimestamp=meta.get("deletionTimestamp"),
            config=spec.get("config"),
            phase=Phase(phase) if phase in _PHASES else Phase.PENDING,
            observedGeneration=status.get("observedGeneration") or 0,
            lastError=LastError.model_validate(dict(last_error)) if last_error else None,
            providerStatus=status.get("providerStatus"),
        )

    def status_body(self) -> dict:
        return {
            "phase": self.phase.value,
            "observedGeneration": self.observedGeneration,
            "lastError": self.lastError.model_dump() if self.lastError else None,
            "providerStatus": self.providerStatus,
        }

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True


# ---------------------------------------------------------------------------
# Status API responses
# ---------------------------------------------------------------------------

class DeployItemResponse(BaseModel):
    """DeployItem details returned by the status API."""
    name: str
    namespace: str
    phase: str = Phase.PENDING.value
    generation: int = 0
    observedGeneration: int = 0
    lastError: Optional[LastError] = None
    managedResources: List[ManagedResourceStatus] = []


class DeployItemListResponse(BaseModel):
    items: List[DeployItemResponse]
    total: int


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"
