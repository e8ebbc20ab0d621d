"""
Operator configuration: all settings from env vars with sensible defaults.
Follows 12-factor app methodology.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Descriptor CRDs
    CRD_GROUP: str = os.environ.get("CRD_GROUP", "repo-manager.pulpproject.org")
    CRD_VERSION: str = os.environ.get("CRD_VERSION", "v1beta2")
    CRD_PLURAL: str = os.environ.get("CRD_PLURAL", "pulps")
    CRD_KIND: str = "Pulp"
    BACKUP_PLURAL: str = os.environ.get("BACKUP_PLURAL", "pulpbackups")
    BACKUP_KIND: str = "PulpBackup"

    # Requeue policy (seconds)
    REQUEUE_DELAY: float = float(os.environ.get("REQUEUE_DELAY", "1"))
    ERROR_DELAY: float = float(os.environ.get("ERROR_DELAY", "15"))
    RECONCILE_INTERVAL: float = float(os.environ.get("RECONCILE_INTERVAL", "60"))

    # Per-request deadline for every cluster call
    REQUEST_TIMEOUT: float = float(os.environ.get("REQUEST_TIMEOUT", "30"))

    # Concurrency: distinct descriptors reconciled in parallel
    MAX_WORKERS: int = int(os.environ.get("MAX_WORKERS", "3"))

    # Observability
    REDIS_URL: str = os.environ.get("REDIS_URL", "")
    METRICS_PORT: int = int(os.environ.get("METRICS_PORT", "0"))

    # Workload images
    API_IMAGE: str = os.environ.get("API_IMAGE", "quay.io/pulp/pulp-minimal:stable")
    CONTENT_IMAGE: str = os.environ.get("CONTENT_IMAGE", "quay.io/pulp/pulp-minimal:stable")
    BACKUP_IMAGE: str = os.environ.get("BACKUP_IMAGE", "quay.io/pulp/pulp-minimal:stable")


settings = Settings()
