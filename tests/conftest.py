"""Shared pytest fixtures for manifest-deployer tests."""

import copy
import itertools
import threading

import pytest

from manifest_deployer.config import Settings
from manifest_deployer.errors import AlreadyExistsError, ClientError, NotFoundError
from manifest_deployer.models import DeployItem
from manifest_deployer.services.kubernetes_service import DeployItemStore, ResourceStore


def merge_patch(target, patch):
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


class FakeResourceStore(ResourceStore):
    """In-memory ResourceStore with API-server-like uid/resourceVersion handling.

    Attributes:
        calls: (verb, key) for every call, in order
        stuck: keys whose delete is accepted but never completes
        failures: (verb, name) -> exception raised instead of performing the call
    """

    def __init__(self):
        self.objects: dict[tuple, dict] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.stuck: set[tuple] = set()
        self.failures: dict[tuple[str, str], Exception] = {}
        self._uids = itertools.count(1)
        self._lock = threading.Lock()

    @staticmethod
    def key_of(api_version, kind, name, namespace=""):
        return (api_version.rpartition("/")[0], kind, namespace or "", name)

    @classmethod
    def obj_key(cls, obj):
        meta = obj["metadata"]
        return cls.key_of(obj["apiVersion"], obj["kind"], meta["name"], meta.get("namespace", ""))

    def _record(self, verb, key):
        self.calls.append((verb, key))
        failure = self.failures.get((verb, key[3]))
        if failure is not None:
            raise failure

    def add(self, obj, uid=None):
        """Seed an object as if it already existed in the cluster."""
        stored = copy.deepcopy(obj)
        meta = stored.setdefault("metadata", {})
        meta.setdefault("uid", uid or f"uid-{next(self._uids)}")
        meta.setdefault("resourceVersion", "1")
        self.objects[self.obj_key(stored)] = stored
        return copy.deepcopy(stored)

    def lookup(self, api_version, kind, name, namespace=""):
        obj = self.objects.get(self.key_of(api_version, kind, name, namespace))
        return copy.deepcopy(obj) if obj is not None else None

    def writes(self):
        return [c for c in self.calls if c[0] in ("create", "update", "patch", "delete")]

    def verbs(self, verb):
        return [c[1] for c in self.calls if c[0] == verb]

    # --- ResourceStore ---

    def get(self, api_version, kind, name, namespace=""):
        key = self.key_of(api_version, kind, name, namespace)
        with self._lock:
            self._record("get", key)
            if key not in self.objects:
                raise NotFoundError(f"{kind} {namespace}/{name}")
            return copy.deepcopy(self.objects[key])

    def create(self, obj):
        key = self.obj_key(obj)
        with self._lock:
            self._record("create", key)
            if key in self.objects:
                raise AlreadyExistsError(f"{key} already exists")
            stored = copy.deepcopy(obj)
            stored["metadata"]["uid"] = f"uid-{next(self._uids)}"
            stored["metadata"]["resourceVersion"] = "1"
            self.objects[key] = stored
            return copy.deepcopy(stored)

    def update(self, obj):
        key = self.obj_key(obj)
        with self._lock:
            self._record("update", key)
            live = self.objects.get(key)
            if live is None:
                raise NotFoundError(str(key))
            if obj["metadata"].get("resourceVersion") != live["metadata"]["resourceVersion"]:
                raise ClientError("the object has been modified", status=409)
            stored = copy.deepcopy(obj)
            stored["metadata"]["uid"] = live["metadata"]["uid"]
            stored["metadata"]["resourceVersion"] = str(int(live["metadata"]["resourceVersion"]) + 1)
            self.objects[key] = stored
            return copy.deepcopy(stored)

    def patch(self, current, desired):
        key = self.obj_key(current)
        with self._lock:
            self._record("patch", key)
            live = self.objects.get(key)
            if live is None:
                raise NotFoundError(str(key))
            stored = merge_patch(live, desired)
            stored["metadata"]["uid"] = live["metadata"]["uid"]
            stored["metadata"]["resourceVersion"] = str(int(live["metadata"]["resourceVersion"]) + 1)
            self.objects[key] = stored
            return copy.deepcopy(stored)

    def delete(self, obj):
        key = self.obj_key(obj)
        with self._lock:
            self._record("delete", key)
            if key not in self.objects:
                raise NotFoundError(str(key))
            if key not in self.stuck:
                del self.objects[key]


class FakeDeployItemStore(DeployItemStore):
    """Records every status and finalizer write.

    fail_next maps a method name to an exception raised (once) by its next call.
    """

    def __init__(self):
        self.status_updates: list[dict] = []
        self.finalizer_updates: list[list[str]] = []
        self.fail_next: dict[str, Exception] = {}

    def update_status(self, item):
        if "update_status" in self.fail_next:
            raise self.fail_next.pop("update_status")
        self.status_updates.append(copy.deepcopy(item.status_body()))

    def update_finalizers(self, item):
        if "update_finalizers" in self.fail_next:
            raise self.fail_next.pop("update_finalizers")
        self.finalizer_updates.append(list(item.finalizers))


class RecordingEvent(threading.Event):
    """Cancel event that never sleeps; records requested waits."""

    def __init__(self, on_wait=None):
        super().__init__()
        self.waits: list[float] = []
        self._on_wait = on_wait

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if self._on_wait:
            self._on_wait(len(self.waits))
        return self.is_set()


def configmap(name, namespace="default", data=None, **meta):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace, **meta},
        "data": data or {"key": "value"},
    }


def deployment(name, namespace="default", replicas=1):
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"replicas": replicas},
    }


@pytest.fixture
def fast_settings():
    """Settings with no real waiting."""
    return Settings(
        INSTANCE_ID="test-instance",
        DELETE_TIMEOUT_SECONDS=0,
        DELETE_POLL_INTERVAL=0,
        HEALTH_CHECK_INTERVAL=0,
        HEALTH_CHECK_STEPS=3,
        MAX_PARALLEL_DELETIONS=4,
        REDIS_URL="",
    )


@pytest.fixture
def store():
    return FakeResourceStore()


@pytest.fixture
def host():
    return FakeDeployItemStore()


@pytest.fixture
def make_item():
    """Build a DeployItem with the given manifests entries."""
    def _make(manifests=None, update_strategy="update", provider_status=None, generation=1,
              finalizers=("finalizer.landscaper.gardener.cloud",), name="my-item"):
        config = None
        if manifests is not None:
            config = {
                "apiVersion": "manifest.deployer.landscaper.gardener.cloud/v1alpha2",
                "kind": "ProviderConfiguration",
                "updateStrategy": update_strategy,
                "manifests": list(manifests),
            }
        return DeployItem(
            name=name,
            namespace="landscaper",
            type="landscaper.gardener.cloud/kubernetes-manifest",
            generation=generation,
            finalizers=list(finalizers),
            config=config,
            providerStatus=provider_status,
        )
    return _make


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Keep lifecycle events off any Redis configured in the environment."""
    from manifest_deployer import events
    monkeypatch.setattr(events, "get_redis", lambda: None)
