"""
Kubernetes service layer — abstracts all K8s API interactions.

Two stores live here:
  - ResourceStore: CRUD over arbitrary objects on the target cluster,
    addressed by (apiVersion, kind, namespace, name). The deployer core
    only ever talks to this interface.
  - DeployItemStore: writes DeployItem status and finalizers back to the
    host cluster.

Design principles:
  - Objects are plain dicts (unstructured), as the API server returns them
  - Every remote call carries an explicit request timeout
  - Clean error handling: translates K8s API exceptions to domain errors
"""

import abc
import logging
from contextlib import contextmanager
from typing import Optional

import urllib3
from kubernetes import client, config, dynamic
from kubernetes.client import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from manifest_deployer.config import settings
from manifest_deployer.errors import AlreadyExistsError, ClientError, NotFoundError
from manifest_deployer.models import DeployItem

logger = logging.getLogger("kubernetes_service")

_k8s_loaded = False


def _ensure_k8s():
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if settings.IN_CLUSTER:
        config.load_incluster_config()
    else:
        config.load_kube_config(config_file=settings.KUBECONFIG or None)
    _k8s_loaded = True


def _custom_api() -> client.CustomObjectsApi:
    _ensure_k8s()
    return client.CustomObjectsApi()


def target_api_client() -> client.ApiClient:
    """API client for the target cluster (host cluster unless configured)."""
    if settings.TARGET_KUBECONFIG:
        return config.new_client_from_config(config_file=settings.TARGET_KUBECONFIG)
    _ensure_k8s()
    return client.ApiClient()


def describe(obj: dict) -> str:
    meta = obj.get("metadata") or {}
    if meta.get("namespace"):
        return f"{obj.get('kind')} {meta['namespace']}/{meta.get('name')}"
    return f"{obj.get('kind')} {meta.get('name')}"


def _translate(e: ApiException, what: str) -> ClientError:
    if e.status == 404:
        return NotFoundError(f"{what} not found")
    if e.status == 409:
        return AlreadyExistsError(f"{what}: conflict ({e.reason})")
    return ClientError(f"{what}: {e.status} {e.reason}", status=e.status)


@contextmanager
def _api_errors(what: str):
    """Raise every API or transport failure inside the block as a ClientError."""
    try:
        yield
    except ApiException as e:
        raise _translate(e, what) from e
    except (urllib3.exceptions.HTTPError, OSError) as e:
        # timeouts, refused connections: no HTTP status, always retryable
        raise ClientError(f"{what}: {e}") from e


# ---------------------------------------------------------------------------
# Resource store (target cluster)
# ---------------------------------------------------------------------------

class ResourceStore(abc.ABC):
    """CRUD interface over the target cluster's objects.

    All methods raise NotFoundError when the object (or its kind) does not
    exist and ClientError for any other failure.
    """

    @abc.abstractmethod
    def get(self, api_version: str, kind: str, name: str, namespace: str = "") -> dict:
        ...

    @abc.abstractmethod
    def create(self, obj: dict) -> dict:
        ...

    @abc.abstractmethod
    def update(self, obj: dict) -> dict:
        """Full replace; obj must carry the live resourceVersion."""

    @abc.abstractmethod
    def patch(self, current: dict, desired: dict) -> dict:
        """Merge-patch desired onto the object identified by current."""

    @abc.abstractmethod
    def delete(self, obj: dict) -> None:
        ...


class KubernetesResourceStore(ResourceStore):
    """ResourceStore backed by the kubernetes dynamic client."""

    def __init__(self, api_client: Optional[client.ApiClient] = None,
                 request_timeout: Optional[float] = None):
        self._dyn = dynamic.DynamicClient(api_client or target_api_client())
        self._timeout = request_timeout if request_timeout is not None else settings.REQUEST_TIMEOUT

    def _resource(self, api_version: str, kind: str):
        try:
            with _api_errors(f"discovery of {kind} in {api_version}"):
                return self._dyn.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError:
            # Kind not served (yet), e.g. CRD not installed
            raise NotFoundError(f"kind {kind} in {api_version}")

    @staticmethod
    def _ns(resource, namespace: str) -> Optional[str]:
        return (namespace or None) if resource.namespaced else None

    def get(self, api_version: str, kind: str, name: str, namespace: str = "") -> dict:
        resource = self._resource(api_version, kind)
        with _api_errors(f"{kind} {namespace}/{name}"):
            found = resource.get(
                name=name,
                namespace=self._ns(resource, namespace),
                _request_timeout=self._timeout,
            )
        return found.to_dict()

    def create(self, obj: dict) -> dict:
        resource = self._resource(obj["apiVersion"], obj["kind"])
        namespace = self._ns(resource, obj["metadata"].get("namespace", ""))
        with _api_errors(f"create {describe(obj)}"):
            created = resource.create(body=obj, namespace=namespace, _request_timeout=self._timeout)
        return created.to_dict()

    def update(self, obj: dict) -> dict:
        resource = self._resource(obj["apiVersion"], obj["kind"])
        namespace = self._ns(resource, obj["metadata"].get("namespace", ""))
        with _api_errors(f"update {describe(obj)}"):
            replaced = resource.replace(body=obj, namespace=namespace, _request_timeout=self._timeout)
        return replaced.to_dict()

    def patch(self, current: dict, desired: dict) -> dict:
        resource = self._resource(current["apiVersion"], current["kind"])
        meta = current["metadata"]
        with _api_errors(f"patch {describe(current)}"):
            patched = resource.patch(
                body=desired,
                name=meta["name"],
                namespace=self._ns(resource, meta.get("namespace", "")),
                content_type="application/merge-patch+json",
                _request_timeout=self._timeout,
            )
        return patched.to_dict()

    def delete(self, obj: dict) -> None:
        resource = self._resource(obj["apiVersion"], obj["kind"])
        meta = obj["metadata"]
        with _api_errors(f"delete {describe(obj)}"):
            resource.delete(
                name=meta["name"],
                namespace=self._ns(resource, meta.get("namespace", "")),
                _request_timeout=self._timeout,
            )


# ---------------------------------------------------------------------------
# DeployItem store (host cluster)
# ---------------------------------------------------------------------------

class DeployItemStore(abc.ABC):
    @abc.abstractmethod
    def update_status(self, item: DeployItem) -> None:
        ...

    @abc.abstractmethod
    def update_finalizers(self, item: DeployItem) -> None:
        ...


class KubernetesDeployItemStore(DeployItemStore):
    """Persists DeployItem status/finalizers through the CustomObjectsApi."""

    def __init__(self, api: Optional[client.CustomObjectsApi] = None):
        self._api = api or _custom_api()

    def update_status(self, item: DeployItem) -> None:
        with _api_errors(f"status of DeployItem {item.namespace}/{item.name}"):
            self._api.patch_namespaced_custom_object_status(
                settings.CRD_GROUP, settings.CRD_VERSION, item.namespace,
                settings.CRD_PLURAL, item.name,
                {"status": item.status_body()},
                _request_timeout=settings.REQUEST_TIMEOUT,
            )
        logger.debug(f"DeployItem {item.namespace}/{item.name} status updated (phase={item.phase.value})")

    def update_finalizers(self, item: DeployItem) -> None:
        with _api_errors(f"DeployItem {item.namespace}/{item.name}"):
            self._api.patch_namespaced_custom_object(
                settings.CRD_GROUP, settings.CRD_VERSION, item.namespace,
                settings.CRD_PLURAL, item.name,
                {"metadata": {"finalizers": item.finalizers}},
                _request_timeout=settings.REQUEST_TIMEOUT,
            )
        logger.debug(f"DeployItem {item.namespace}/{item.name} finalizers: {item.finalizers}")


# ---------------------------------------------------------------------------
# Read helpers for the status API
# ---------------------------------------------------------------------------

def list_deploy_items(namespace: Optional[str] = None) -> list[DeployItem]:
    """List manifest DeployItems, optionally within one namespace."""
    api = _custom_api()
    if namespace:
        result = api.list_namespaced_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, namespace, settings.CRD_PLURAL
        )
    else:
        result = api.list_cluster_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL
        )
    items = [DeployItem.from_body(item) for item in result.get("items", [])]
    return [i for i in items if i.type == settings.DEPLOY_ITEM_TYPE]


def get_deploy_item(namespace: str, name: str) -> Optional[DeployItem]:
    """Get a single DeployItem, or None if it doesn't exist."""
    api = _custom_api()
    try:
        item = api.get_namespaced_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, namespace, settings.CRD_PLURAL, name
        )
    except ApiException as e:
        if e.status == 404:
            return None
        raise
    return DeployItem.from_body(item)
