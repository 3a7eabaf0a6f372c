"""
Configuration module — all settings from env vars with sensible defaults.
Follows 12-factor app methodology.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes (host cluster holding the DeployItems)
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = os.environ.get("IN_CLUSTER", "false").lower() == "true"
    # Target cluster; empty means the host cluster is also the target
    TARGET_KUBECONFIG: str = os.environ.get("TARGET_KUBECONFIG", "")

    # CRD
    CRD_GROUP: str = "landscaper.gardener.cloud"
    CRD_VERSION: str = "v1alpha1"
    CRD_PLURAL: str = "deployitems"
    DEPLOY_ITEM_TYPE: str = "landscaper.gardener.cloud/kubernetes-manifest"
    FINALIZER: str = "finalizer.landscaper.gardener.cloud"

    # Ownership
    INSTANCE_ID: str = os.environ.get("INSTANCE_ID", "default")

    # Remote calls
    REQUEST_TIMEOUT: float = float(os.environ.get("REQUEST_TIMEOUT", "30"))

    # Orphan cleanup
    DELETE_TIMEOUT_SECONDS: float = float(os.environ.get("DELETE_TIMEOUT_SECONDS", "60"))
    DELETE_POLL_INTERVAL: float = float(os.environ.get("DELETE_POLL_INTERVAL", "5"))
    MAX_PARALLEL_DELETIONS: int = int(os.environ.get("MAX_PARALLEL_DELETIONS", "10"))

    # Health checks
    HEALTH_CHECK_INTERVAL: float = float(os.environ.get("HEALTH_CHECK_INTERVAL", "5"))
    HEALTH_CHECK_STEPS: int = int(os.environ.get("HEALTH_CHECK_STEPS", "3"))
    HEALTH_TIMER_INTERVAL: float = float(os.environ.get("HEALTH_TIMER_INTERVAL", "120"))

    # Operator
    MAX_PARALLEL_RECONCILES: int = int(os.environ.get("MAX_PARALLEL_RECONCILES", "3"))
    RETRY_DELAY: int = int(os.environ.get("RETRY_DELAY", "15"))

    # Events
    REDIS_URL: str = os.environ.get("REDIS_URL", "")

    # Rate limiting
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "30/minute")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")


settings = Settings()
