"""
Pydantic models for the deployment descriptor (the Pulp CR) and its status.

Field names follow the CR's JSON schema (snake_case spec, camelCase status)
so a kopf body can be validated directly.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pulp_operator.config import settings


class DatabaseSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    external_db_secret: str = ""
    postgres_port: int = 5432


class CacheSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    external_cache_secret: str = ""
    redis_port: int = 0


class WorkloadSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    replicas: int = 1
    gunicorn_workers: int = 2


class PulpSpec(BaseModel):
    """Declared intent for one Pulp deployment."""

    model_config = ConfigDict(extra="allow")

    deployment_type: str = "pulp"
    image: str = ""
    image_version: str = ""

    # Storage backends, mutually exclusive (see pulp_operator.storage)
    file_storage_storage_class: str = ""
    file_storage_size: str = ""
    file_storage_access_mode: str = ""
    object_storage_s3_secret: str = ""
    object_storage_azure_secret: str = ""

    # Secret names, defaulted by the operator when left empty
    admin_password_secret: str = ""
    container_token_secret: str = ""
    db_fields_encryption_secret: str = ""
    postgres_configuration_secret: str = ""

    # Ingress
    ingress_type: str = ""
    ingress_host: str = ""
    ingress_tls_secret: str = ""
    route_host: str = ""

    database: DatabaseSpec = Field(default_factory=DatabaseSpec)
    cache: CacheSpec = Field(default_factory=CacheSpec)
    api: WorkloadSpec = Field(default_factory=WorkloadSpec)
    content: WorkloadSpec = Field(default_factory=WorkloadSpec)

    pulp_settings: Dict[str, Any] = Field(default_factory=dict)


class BackupSpec(BaseModel):
    """Declared intent for one PulpBackup."""

    model_config = ConfigDict(extra="allow")

    deployment_name: str = "pulp"
    deployment_type: str = "pulp"
    postgres_configuration_secret: str = ""
    backup_storage_class: str = ""
    backup_storage_requirements: str = "5Gi"


class Condition(BaseModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    lastTransitionTime: Optional[str] = None


class Descriptor(BaseModel):
    """
    Snapshot of a top-level descriptor taken at the start of a pass.

    Never mutated in place: defaulting and status changes produce new copies
    and are written back through explicit patch calls.
    """

    model_config = ConfigDict(frozen=True)

    api_version: str = f"{settings.CRD_GROUP}/{settings.CRD_VERSION}"
    kind: str = settings.CRD_KIND
    plural: str = settings.CRD_PLURAL
    name: str
    namespace: str
    uid: str = ""
    generation: int = 0
    spec: PulpSpec = Field(default_factory=PulpSpec)
    conditions: List[Condition] = Field(default_factory=list)

    @classmethod
    def from_body(cls, body: Dict[str, Any], plural: Optional[str] = None) -> "Descriptor":
        """Build a descriptor from a raw kopf/Kubernetes object body."""
        meta = body.get("metadata", {})
        status = body.get("status") or {}
        fields = {
            "name": meta["name"],
            "namespace": meta.get("namespace", "default"),
            "uid": meta.get("uid", ""),
            "generation": meta.get("generation", 0),
            "spec": dict(body.get("spec") or {}),
            "conditions": list(status.get("conditions", [])),
        }
        if body.get("apiVersion"):
            fields["api_version"] = body["apiVersion"]
        if body.get("kind"):
            fields["kind"] = body["kind"]
        if plural:
            fields["plural"] = plural
        return cls(**fields)

    @property
    def group(self) -> str:
        return self.api_version.split("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.split("/")[-1]

    def owner_reference(self) -> Dict[str, Any]:
        """Controller back-link attached to every managed sub-resource."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def object_reference(self) -> Dict[str, Any]:
        """Minimal body used as the subject of emitted events."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "uid": self.uid,
            },
        }


class BackupDescriptor(Descriptor):
    kind: str = settings.BACKUP_KIND
    plural: str = settings.BACKUP_PLURAL
    spec: BackupSpec = Field(default_factory=BackupSpec)
