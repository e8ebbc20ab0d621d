"""
Content builders for every managed sub-resource, and the Resource registry
that ties each one to its kind, its name and its builder.

A builder is a pure function of the descriptor plus read-only context (it may
read user secrets) and returns the fully specified desired object as a dict.
Owner references are attached by the engine, not here.
"""
import base64
import enum
import logging
import secrets
import string
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from pulp_operator.cluster import ClusterClient, ResourceKind
from pulp_operator.config import settings
from pulp_operator.credentials import retrieve_secret_data
from pulp_operator.errors import MissingCredentialData
from pulp_operator.models import Descriptor, WorkloadSpec
from pulp_operator.settings_payload import SettingsPayload
from pulp_operator.storage import StorageType, storage_backend

logger = logging.getLogger("pulp_operator.builders")

API_PORT = 24817
CONTENT_PORT = 24816
WEB_PORT = 24880
DEFAULT_REDIS_PORT = 6379
ADMIN_PASSWORD_LENGTH = 32

# Version of the server secret the pods of a workload were started with
CONFIG_VERSION_ANNOTATION = "repo-manager.pulpproject.org/server-config-version"


@dataclass(frozen=True)
class BuildContext:
    descriptor: Descriptor
    cluster: ClusterClient
    log: logging.Logger = logger


# ---------------------------------------------------------------------------
# Names and labels
# ---------------------------------------------------------------------------

def file_storage_name(d: Descriptor) -> str:
    return f"{d.name}-file-storage"


def server_secret_name(d: Descriptor) -> str:
    return f"{d.name}-server"


def db_fields_encryption_name(d: Descriptor) -> str:
    return d.spec.db_fields_encryption_secret or f"{d.name}-db-fields-encryption"


def admin_password_name(d: Descriptor) -> str:
    return d.spec.admin_password_secret or f"{d.name}-admin-password"


def container_auth_name(d: Descriptor) -> str:
    return d.spec.container_token_secret or f"{d.name}-container-auth"


def postgres_configuration_name(d: Descriptor) -> str:
    return d.spec.postgres_configuration_secret or f"{d.name}-postgres-configuration"


def api_deployment_name(d: Descriptor) -> str:
    return f"{d.name}-api"


def api_service_name(d: Descriptor) -> str:
    return f"{d.name}-api-svc"


def content_deployment_name(d: Descriptor) -> str:
    return f"{d.name}-content"


def content_service_name(d: Descriptor) -> str:
    return f"{d.name}-content-svc"


def backup_claim_name(d: Descriptor) -> str:
    return f"{d.spec.deployment_name}-backup-claim"


def backup_manager_name(d: Descriptor) -> str:
    return f"{d.name}-backup-manager"


def component_labels(d: Descriptor, component: str) -> Dict[str, str]:
    """Labels for selecting the resources of one component of a descriptor."""
    dt = d.spec.deployment_type
    return {
        "app.kubernetes.io/name": f"{dt}-{component}",
        "app.kubernetes.io/instance": f"{dt}-{component}-{d.name}",
        "app.kubernetes.io/component": component,
        "app.kubernetes.io/part-of": dt,
        "app.kubernetes.io/managed-by": f"{dt}-operator",
        "app": f"pulp-{component}",
        "pulp_cr": d.name,
    }


def _metadata(name: str, d: Descriptor, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    meta = {"name": name, "namespace": d.namespace}
    if labels:
        meta["labels"] = labels
    return meta


def _image(d: Descriptor, default: str) -> str:
    if not d.spec.image:
        return default
    if d.spec.image_version:
        return f"{d.spec.image}:{d.spec.image_version}"
    return d.spec.image


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

def file_storage_pvc(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": _metadata(file_storage_name(d), d, component_labels(d, "storage")),
        "spec": {
            "resources": {"requests": {"storage": d.spec.file_storage_size or "10Gi"}},
            "accessModes": [d.spec.file_storage_access_mode or "ReadWriteMany"],
            "storageClassName": d.spec.file_storage_storage_class,
        },
    }


# ---------------------------------------------------------------------------
# settings.py
# ---------------------------------------------------------------------------

def root_url(d: Descriptor) -> str:
    """User facing URL of the deployment."""
    ingress_type = d.spec.ingress_type.lower()
    if ingress_type == "ingress" and d.spec.ingress_host:
        proto = "https" if d.spec.ingress_tls_secret else "http"
        return f"{proto}://{d.spec.ingress_host}"
    if ingress_type == "route":
        return f"https://{d.spec.route_host or d.name}"
    return f"http://{d.name}-web-svc.{d.namespace}.svc.cluster.local:{WEB_PORT}"


def token_server(d: Descriptor) -> str:
    ingress_type = d.spec.ingress_type.lower()
    if ingress_type == "route":
        return root_url(d) + "/token/"
    if ingress_type == "ingress":
        proto = "https" if d.spec.ingress_tls_secret else "http"
        return f"{proto}://{d.spec.ingress_host}/token/"
    return f"http://{api_service_name(d)}.{d.namespace}.svc.cluster.local:{API_PORT}/token/"


def _database_settings(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    external = d.spec.database.external_db_secret
    if external:
        keys = ("POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_USERNAME",
                "POSTGRES_PASSWORD", "POSTGRES_DB_NAME", "POSTGRES_SSLMODE")
        secret_name = external
    else:
        keys = ("username", "password", "database", "port", "sslmode")
        secret_name = postgres_configuration_name(d)

    ctx.log.debug(f"Retrieving Postgres credentials from {d.namespace}/{secret_name} secret")
    try:
        creds = retrieve_secret_data(ctx.cluster, secret_name, d.namespace, True, *keys)
    except MissingCredentialData as e:
        ctx.log.error(f"Postgres credentials unavailable: {e}")
        creds = {key: "" for key in keys}

    if external:
        host, port, user, password, name, sslmode = (creds[k] for k in keys)
    else:
        host = f"{d.name}-database-svc"
        user, password, name, port, sslmode = (creds[k] for k in keys)

    return {
        "default": {
            "HOST": host,
            "ENGINE": "django.db.backends.postgresql_psycopg2",
            "NAME": name,
            "USER": user,
            "PASSWORD": password,
            "PORT": port,
            "CONN_MAX_AGE": 0,
            "OPTIONS": {"sslmode": sslmode},
        }
    }


def _cache_settings(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    cache = d.spec.cache
    if not cache.external_cache_secret:
        return {
            "CACHE_ENABLED": True,
            "REDIS_HOST": f"{d.name}-redis-svc.{d.namespace}",
            "REDIS_PORT": str(cache.redis_port or DEFAULT_REDIS_PORT),
            "REDIS_PASSWORD": "",
            "REDIS_DB": "",
        }
    keys = ("REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD", "REDIS_DB")
    try:
        creds = retrieve_secret_data(ctx.cluster, cache.external_cache_secret, d.namespace, True, *keys)
    except MissingCredentialData as e:
        ctx.log.error(f"External cache configuration unavailable: {e}")
        creds = {key: "" for key in keys}
    return {"CACHE_ENABLED": True, **creds}


def _azure_settings(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    secret_name = d.spec.object_storage_azure_secret
    data = retrieve_secret_data(
        ctx.cluster, secret_name, d.namespace, True,
        "azure-account-name", "azure-account-key", "azure-container",
        "azure-container-path", "azure-connection-string",
    )
    return {
        "AZURE_CONNECTION_STRING": data["azure-connection-string"],
        "AZURE_LOCATION": data["azure-container-path"],
        "AZURE_ACCOUNT_NAME": data["azure-account-name"],
        "AZURE_ACCOUNT_KEY": data["azure-account-key"],
        "AZURE_CONTAINER": data["azure-container"],
        "AZURE_URL_EXPIRATION_SECS": 60,
        "AZURE_OVERWRITE_FILES": True,
        "DEFAULT_FILE_STORAGE": "storages.backends.azure_storage.AzureStorage",
    }


def _s3_settings(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    secret_name = d.spec.object_storage_s3_secret
    data = retrieve_secret_data(
        ctx.cluster, secret_name, d.namespace, True,
        "s3-access-key-id", "s3-secret-access-key", "s3-bucket-name",
    )
    optional = retrieve_secret_data(ctx.cluster, secret_name, d.namespace, False, "s3-endpoint", "s3-region")

    section: Dict[str, Any] = {}
    if not optional["s3-endpoint"] and not optional["s3-region"]:
        ctx.log.error(f"Either s3-endpoint or s3-region needs to be specified in {d.namespace}/{secret_name}")
    if optional["s3-endpoint"]:
        section["AWS_S3_ENDPOINT_URL"] = optional["s3-endpoint"]
    if optional["s3-region"]:
        section["AWS_S3_REGION_NAME"] = optional["s3-region"]
    section.update({
        "AWS_ACCESS_KEY_ID": data["s3-access-key-id"],
        "AWS_SECRET_ACCESS_KEY": data["s3-secret-access-key"],
        "AWS_STORAGE_BUCKET_NAME": data["s3-bucket-name"],
        "AWS_DEFAULT_ACL": "@none None",
        "S3_USE_SIGV4": True,
        "AWS_S3_SIGNATURE_VERSION": "s3v4",
        "AWS_S3_ADDRESSING_STYLE": "path",
        "DEFAULT_FILE_STORAGE": "storages.backends.s3boto3.S3Boto3Storage",
        "MEDIA_ROOT": "",
    })
    return section


def server_settings(ctx: BuildContext) -> SettingsPayload:
    """Everything that ends up in /etc/pulp/settings.py."""
    d = ctx.descriptor
    url = root_url(d)
    payload = SettingsPayload({
        "DB_ENCRYPTION_KEY": "/etc/pulp/keys/database_fields.symmetric.key",
        "GALAXY_COLLECTION_SIGNING_SERVICE": "ansible-default",
        "GALAXY_CONTAINER_SIGNING_SERVICE": "container-default",
        "ANSIBLE_API_HOSTNAME": url,
        "ANSIBLE_CERTS_DIR": "/etc/pulp/keys/",
        "CONTENT_ORIGIN": url,
        "DATABASES": _database_settings(ctx),
        "GALAXY_FEATURE_FLAGS": {"execution_environments": "True"},
        "PRIVATE_KEY_PATH": "/etc/pulp/keys/container_auth_private_key.pem",
        "PUBLIC_KEY_PATH": "/etc/pulp/keys/container_auth_public_key.pem",
        "STATIC_ROOT": "/var/lib/operator/static/",
        "TOKEN_AUTH_DISABLED": False,
        "TOKEN_SIGNATURE_ALGORITHM": "ES256",
        "API_ROOT": "/pulp/",
    })

    if d.spec.cache.enabled:
        payload.update(_cache_settings(ctx))

    backend = storage_backend(d, warn=False)
    try:
        if backend == StorageType.AZURE:
            payload.update(_azure_settings(ctx))
        elif backend == StorageType.S3:
            payload.update(_s3_settings(ctx))
    except MissingCredentialData as e:
        ctx.log.error(f"Object storage settings skipped: {e}")

    payload.set("TOKEN_SERVER", token_server(d))
    payload.add_custom(d.spec.pulp_settings)
    return payload


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

def _secret(name: str, d: Descriptor, string_data: Dict[str, str]) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(name, d),
        "stringData": string_data,
    }


def pulp_server_secret(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    return _secret(server_secret_name(d), d, {"settings.py": server_settings(ctx).render()})


def db_fields_encryption_secret(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    key = Fernet.generate_key().decode("utf-8")
    return _secret(db_fields_encryption_name(d), d, {"database_fields.symmetric.key": key})


def create_password(length: int = ADMIN_PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def admin_password_secret(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    return _secret(admin_password_name(d), d, {"password": create_password()})


def token_auth_key_pair() -> tuple:
    """EC P-256 key pair (PEM) used to sign container registry tokens (ES256)."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode("utf-8"), public_pem.decode("utf-8")


def container_auth_secret(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    private_pem, public_pem = token_auth_key_pair()
    return _secret(container_auth_name(d), d, {
        "container_auth_private_key.pem": private_pem,
        "container_auth_public_key.pem": public_pem,
    })


def encode_secret(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Move stringData into base64 data, the form the API server returns."""
    if obj.get("kind") != "Secret" or not obj.get("stringData"):
        return obj
    encoded = dict(obj)
    data = dict(encoded.get("data") or {})
    for key, value in encoded.pop("stringData").items():
        data[key] = base64.b64encode(value.encode("utf-8")).decode("ascii")
    encoded["data"] = data
    return encoded


# ---------------------------------------------------------------------------
# Workloads and services
# ---------------------------------------------------------------------------

def _volumes(d: Descriptor, with_token_keys: bool) -> tuple:
    volumes: List[Dict[str, Any]] = [
        {"name": f"{d.name}-server", "secret": {
            "secretName": server_secret_name(d),
            "items": [{"key": "settings.py", "path": "settings.py"}],
        }},
        {"name": f"{d.name}-db-fields-encryption", "secret": {
            "secretName": db_fields_encryption_name(d),
            "items": [{"key": "database_fields.symmetric.key", "path": "database_fields.symmetric.key"}],
        }},
    ]
    mounts: List[Dict[str, Any]] = [
        {"name": f"{d.name}-server", "mountPath": "/etc/pulp/settings.py",
         "subPath": "settings.py", "readOnly": True},
        {"name": f"{d.name}-db-fields-encryption", "mountPath": "/etc/pulp/keys/database_fields.symmetric.key",
         "subPath": "database_fields.symmetric.key", "readOnly": True},
    ]
    if with_token_keys:
        volumes.append({"name": f"{d.name}-container-auth", "secret": {"secretName": container_auth_name(d)}})
        for key in ("container_auth_private_key.pem", "container_auth_public_key.pem"):
            mounts.append({"name": f"{d.name}-container-auth", "mountPath": f"/etc/pulp/keys/{key}",
                           "subPath": key, "readOnly": True})

    backend = storage_backend(d, warn=False)
    if backend == StorageType.STORAGE_CLASS:
        volumes.append({"name": "file-storage", "persistentVolumeClaim": {"claimName": file_storage_name(d)}})
        mounts.append({"name": "file-storage", "mountPath": "/var/lib/pulp"})
    elif backend == StorageType.NONE:
        volumes.append({"name": "file-storage", "emptyDir": {}})
        mounts.append({"name": "file-storage", "mountPath": "/var/lib/pulp"})
    return volumes, mounts


def server_config_version(ctx: BuildContext) -> str:
    """resourceVersion of the live server secret, empty while it does not exist."""
    d = ctx.descriptor
    secret = ctx.cluster.get(ResourceKind.SECRET, server_secret_name(d), d.namespace)
    return ((secret or {}).get("metadata") or {}).get("resourceVersion") or ""


def _deployment(ctx: BuildContext, component: str, workload: WorkloadSpec, name: str,
                image: str, args: List[str], port: int) -> Dict[str, Any]:
    d = ctx.descriptor
    labels = component_labels(d, component)
    volumes, mounts = _volumes(d, with_token_keys=component == "api")
    metadata = _metadata(name, d, labels)
    version = server_config_version(ctx)
    if version:
        metadata["annotations"] = {CONFIG_VERSION_ANNOTATION: version}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata,
        "spec": {
            "replicas": workload.replicas,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [{
                        "name": component,
                        "image": image,
                        "args": args,
                        "env": [
                            {"name": "PULP_GUNICORN_WORKERS", "value": str(workload.gunicorn_workers)},
                            {"name": "POSTGRES_SERVICE_HOST", "value": f"{d.name}-database-svc"},
                            {"name": "POSTGRES_SERVICE_PORT", "value": str(d.spec.database.postgres_port)},
                        ],
                        "ports": [{"containerPort": port, "protocol": "TCP"}],
                        "volumeMounts": mounts,
                    }],
                    "volumes": volumes,
                },
            },
        },
    }


def api_deployment(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    return _deployment(ctx, "api", d.spec.api, api_deployment_name(d),
                       _image(d, settings.API_IMAGE), ["pulp-api"], API_PORT)


def content_deployment(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    return _deployment(ctx, "content", d.spec.content, content_deployment_name(d),
                       _image(d, settings.CONTENT_IMAGE), ["pulp-content"], CONTENT_PORT)


def _service(d: Descriptor, component: str, name: str, port: int) -> Dict[str, Any]:
    labels = component_labels(d, component)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(name, d, labels),
        "spec": {
            "internalTrafficPolicy": "Cluster",
            "ipFamilies": ["IPv4"],
            "ipFamilyPolicy": "SingleStack",
            "ports": [{
                "name": f"{component}-{port}",
                "port": port,
                "protocol": "TCP",
                "targetPort": port,
            }],
            "selector": labels,
            "sessionAffinity": "None",
            "type": "ClusterIP",
            "publishNotReadyAddresses": True,
        },
    }


def api_service(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    return _service(d, "api", api_service_name(d), API_PORT)


def content_service(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    return _service(d, "content", content_service_name(d), CONTENT_PORT)


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------

def backup_claim(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    spec: Dict[str, Any] = {
        "resources": {"requests": {"storage": d.spec.backup_storage_requirements}},
        "accessModes": ["ReadWriteOnce"],
    }
    if d.spec.backup_storage_class:
        spec["storageClassName"] = d.spec.backup_storage_class
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": _metadata(backup_claim_name(d), d, component_labels(d, "backup-storage")),
        "spec": spec,
    }


def backup_manager_pod(ctx: BuildContext) -> Dict[str, Any]:
    d = ctx.descriptor
    labels = component_labels(d, "backup-manager")
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": _metadata(backup_manager_name(d), d, labels),
        "spec": {
            "containers": [{
                "name": "backup-manager",
                "image": settings.BACKUP_IMAGE,
                "command": ["sleep", "infinity"],
                "volumeMounts": [{"name": "backups", "mountPath": "/backups"}],
            }],
            "volumes": [{"name": "backups", "persistentVolumeClaim": {"claimName": backup_claim_name(d)}}],
            "restartPolicy": "Never",
        },
    }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Builder = Callable[[BuildContext], Dict[str, Any]]


class Resource(enum.Enum):
    """
    Every managed sub-resource, carrying its alias (used in condition reasons
    and events), its kind, how it is named, its builder and whether its live
    state is diffed against a fresh build on every pass.

    Generated-once secrets are never diffed: rebuilding them produces new
    random content.
    """

    FILE_STORAGE = ("FileStorage", ResourceKind.PVC, file_storage_name, file_storage_pvc, True)
    SERVER_SECRET = ("Server", ResourceKind.SECRET, server_secret_name, pulp_server_secret, True)
    DB_FIELDS_ENCRYPTION = ("DBFieldsEncryption", ResourceKind.SECRET, db_fields_encryption_name,
                            db_fields_encryption_secret, False)
    ADMIN_PASSWORD = ("AdminPassword", ResourceKind.SECRET, admin_password_name, admin_password_secret, False)
    CONTAINER_AUTH = ("ContainerAuth", ResourceKind.SECRET, container_auth_name, container_auth_secret, False)
    API_DEPLOYMENT = ("Api", ResourceKind.DEPLOYMENT, api_deployment_name, api_deployment, True)
    API_SERVICE = ("Api", ResourceKind.SERVICE, api_service_name, api_service, True)
    CONTENT_DEPLOYMENT = ("Content", ResourceKind.DEPLOYMENT, content_deployment_name, content_deployment, True)
    CONTENT_SERVICE = ("Content", ResourceKind.SERVICE, content_service_name, content_service, True)
    BACKUP_CLAIM = ("BackupClaim", ResourceKind.PVC, backup_claim_name, backup_claim, False)
    BACKUP_MANAGER = ("BackupManager", ResourceKind.POD, backup_manager_name, backup_manager_pod, False)

    def __init__(self, alias: str, kind: ResourceKind, namer: Callable[[Descriptor], str],
                 builder: Builder, drift: bool):
        self.alias = alias
        self.kind = kind
        self.namer = namer
        self.builder = builder
        self.drift = drift

    def name_for(self, descriptor: Descriptor) -> str:
        return self.namer(descriptor)

    def build(self, ctx: BuildContext) -> Dict[str, Any]:
        return self.builder(ctx)
