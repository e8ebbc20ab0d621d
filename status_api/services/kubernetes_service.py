"""
Kubernetes service layer: read-only access to Pulp CRs for the status API.

Design principles:
  - Never writes: the operator owns the descriptors' status
  - Clean error handling: 404 becomes None, everything else propagates
"""

import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.client import ApiException

from pulp_operator.models import Descriptor
from pulp_operator.storage import storage_backend
from status_api.config import settings
from status_api.models import PulpCondition, PulpResponse

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


def _api() -> client.CustomObjectsApi:
    _ensure_k8s()
    return client.CustomObjectsApi()


def _parse_pulp(item: dict) -> PulpResponse:
    """Convert a raw Pulp CR dict into a PulpResponse model."""
    descriptor = Descriptor.from_body(item)
    conditions = [PulpCondition(**c.model_dump()) for c in descriptor.conditions]
    ready_conditions = [c for c in conditions if c.type.endswith("-Ready")]
    return PulpResponse(
        name=descriptor.name,
        namespace=descriptor.namespace,
        deploymentType=descriptor.spec.deployment_type,
        storageBackend=storage_backend(descriptor, warn=False).value,
        ready=bool(ready_conditions) and all(c.status == "True" for c in ready_conditions),
        generation=descriptor.generation,
        conditions=conditions,
    )


def list_pulps(namespace: Optional[str] = None) -> list[PulpResponse]:
    """List Pulp CRs cluster-wide or in one namespace."""
    api = _api()
    if namespace:
        result = api.list_namespaced_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, namespace, settings.CRD_PLURAL
        )
    else:
        result = api.list_cluster_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL
        )
    return [_parse_pulp(item) for item in result.get("items", [])]


def get_pulp(namespace: str, name: str) -> Optional[PulpResponse]:
    """Get a single Pulp CR by namespace and name."""
    api = _api()
    try:
        item = api.get_namespaced_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, namespace, settings.CRD_PLURAL, name
        )
        return _parse_pulp(item)
    except ApiException as e:
        if e.status == 404:
            return None
        raise


def count_pulps_by_readiness() -> dict:
    """Count descriptors grouped by readiness."""
    pulps = list_pulps()
    ready = sum(1 for p in pulps if p.ready)
    return {"total": len(pulps), "ready": ready, "not_ready": len(pulps) - ready}
