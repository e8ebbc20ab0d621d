"""
Configuration module: all settings from env vars with sensible defaults.
Follows 12-factor app methodology.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = os.environ.get("IN_CLUSTER", "false").lower() == "true"

    # CRD
    CRD_GROUP: str = os.environ.get("CRD_GROUP", "repo-manager.pulpproject.org")
    CRD_VERSION: str = os.environ.get("CRD_VERSION", "v1beta2")
    CRD_PLURAL: str = os.environ.get("CRD_PLURAL", "pulps")

    # Redis event stream written by the operator (optional)
    REDIS_URL: str = os.environ.get("REDIS_URL", "")

    # Rate limiting
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "60/minute")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")


settings = Settings()
