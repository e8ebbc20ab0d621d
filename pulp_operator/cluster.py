"""
Kubernetes client layer: the single cluster handle a reconciliation pass uses.

Design principles:
  - Injected, never global: the engine receives a ClusterClient instance
  - Plain dicts in and out (camelCase, as the API server serves them)
  - 404 on read is reported as None; every other failure is translated to
    a domain error (LookupFailure on reads, ApplyFailure on writes)
  - Every call carries the configured request deadline
"""

import base64
import enum
import logging
from typing import Any, Dict, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException

from pulp_operator.config import settings
from pulp_operator.errors import ApplyFailure, LookupFailure

logger = logging.getLogger("pulp_operator.cluster")

_k8s_loaded = False


def ensure_k8s():
    """Load kubeconfig exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    _k8s_loaded = True


class ResourceKind(enum.Enum):
    """Kinds of managed sub-resources and how to reach them in the client."""

    SECRET = ("v1", "Secret", "core", "secret")
    SERVICE = ("v1", "Service", "core", "service")
    PVC = ("v1", "PersistentVolumeClaim", "core", "persistent_volume_claim")
    POD = ("v1", "Pod", "core", "pod")
    DEPLOYMENT = ("apps/v1", "Deployment", "apps", "deployment")

    def __init__(self, api_version: str, kind: str, group: str, suffix: str):
        self.api_version = api_version
        self.kind = kind
        self.group = group
        self.suffix = suffix


class ClusterClient:
    """Get/create/update by kind, pod restarts and descriptor patches."""

    def __init__(self, api_client: Optional[client.ApiClient] = None,
                 request_timeout: float = settings.REQUEST_TIMEOUT):
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self.request_timeout = request_timeout

    # -- helpers -----------------------------------------------------------

    def _api(self, kind: ResourceKind):
        return self.apps if kind.group == "apps" else self.core

    def _call(self, kind: ResourceKind, verb: str, *args, **kwargs):
        method = getattr(self._api(kind), f"{verb}_namespaced_{kind.suffix}")
        return method(*args, _request_timeout=self.request_timeout, **kwargs)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    # -- sub-resources -----------------------------------------------------

    def get(self, kind: ResourceKind, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        """Read a sub-resource. Returns None if it does not exist."""
        try:
            return self._to_dict(self._call(kind, "read", name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise LookupFailure(f"Failed to get {kind.kind} {namespace}/{name}: {e.reason}") from e
        except urllib3.exceptions.HTTPError as e:
            raise LookupFailure(f"Failed to get {kind.kind} {namespace}/{name}: {e}") from e

    def create(self, kind: ResourceKind, body: Dict[str, Any]) -> Dict[str, Any]:
        meta = body["metadata"]
        try:
            return self._to_dict(self._call(kind, "create", meta["namespace"], body))
        except ApiException as e:
            raise ApplyFailure(
                f"Failed to create {kind.kind} {meta['namespace']}/{meta['name']}: {e.reason}",
                status=e.status,
            ) from e
        except urllib3.exceptions.HTTPError as e:
            raise ApplyFailure(f"Failed to create {kind.kind} {meta['namespace']}/{meta['name']}: {e}") from e

    def update(self, kind: ResourceKind, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace a sub-resource. The body must carry metadata.resourceVersion;
        a stale token is rejected by the API server with 409 Conflict.
        """
        meta = body["metadata"]
        try:
            return self._to_dict(self._call(kind, "replace", meta["name"], meta["namespace"], body))
        except ApiException as e:
            raise ApplyFailure(
                f"Failed to update {kind.kind} {meta['namespace']}/{meta['name']}: {e.reason}",
                status=e.status,
            ) from e
        except urllib3.exceptions.HTTPError as e:
            raise ApplyFailure(f"Failed to update {kind.kind} {meta['namespace']}/{meta['name']}: {e}") from e

    def get_secret_data(self, name: str, namespace: str) -> Optional[Dict[str, str]]:
        """Return the decoded key/value content of a secret, or None if absent."""
        secret = self.get(ResourceKind.SECRET, name, namespace)
        if secret is None:
            return None
        decoded = {k: base64.b64decode(v).decode("utf-8") for k, v in (secret.get("data") or {}).items()}
        decoded.update(secret.get("stringData") or {})
        return decoded

    def delete_pods(self, namespace: str, match_labels: Dict[str, str]) -> None:
        """Delete every pod matching the labels; the owning workload recreates them."""
        selector = ",".join(f"{k}={v}" for k, v in sorted(match_labels.items()))
        try:
            self.core.delete_collection_namespaced_pod(
                namespace, label_selector=selector, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            raise ApplyFailure(f"Failed to delete pods {selector} in {namespace}: {e.reason}", status=e.status) from e
        except urllib3.exceptions.HTTPError as e:
            raise ApplyFailure(f"Failed to delete pods {selector} in {namespace}: {e}") from e

    # -- descriptor --------------------------------------------------------

    def _patch_descriptor(self, descriptor, body: Dict[str, Any], status: bool) -> Dict[str, Any]:
        method = (self.custom.patch_namespaced_custom_object_status if status
                  else self.custom.patch_namespaced_custom_object)
        try:
            return method(
                descriptor.group, descriptor.version, descriptor.namespace,
                descriptor.plural, descriptor.name, body,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            raise ApplyFailure(f"Failed to patch {descriptor.kind} {descriptor.name}: {e.reason}",
                               status=e.status) from e
        except urllib3.exceptions.HTTPError as e:
            raise ApplyFailure(f"Failed to patch {descriptor.kind} {descriptor.name}: {e}") from e

    def patch_descriptor_spec(self, descriptor, spec: Dict[str, Any]) -> Dict[str, Any]:
        return self._patch_descriptor(descriptor, {"spec": spec}, status=False)

    def patch_descriptor_status(self, descriptor, status: Dict[str, Any]) -> Dict[str, Any]:
        return self._patch_descriptor(descriptor, {"status": status}, status=True)
