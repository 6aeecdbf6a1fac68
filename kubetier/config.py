from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Logging
    log_level: str = "INFO"

    # Kubernetes connection
    kubeconfig: Optional[str] = None  # Path to kubeconfig; default lookup when unset
    kube_context: Optional[str] = None
    default_namespace: str = "default"
    request_timeout_seconds: float = 30.0  # Per API request (_request_timeout)

    # ==========================================================================
    # Command Timeouts
    # ==========================================================================
    command_timeout_seconds: float = 600.0  # Whole invocation, enforced with asyncio.wait_for
    ready_timeout_seconds: int = 300  # Max time deploy waits for StatefulSets
    ready_poll_interval_seconds: int = 5

    # ==========================================================================
    # Cluster Defaults
    # ==========================================================================
    default_image: str = "docker.io/kubetier/store:latest"
    default_image_pull_policy: str = "IfNotPresent"
    cluster_domain: str = "cluster.local"

    class Config:
        # KUBETIER_LOG_LEVEL, KUBETIER_DEFAULT_NAMESPACE, ...
        env_prefix = "KUBETIER_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False


@lru_cache()
def get_settings():
    return Settings()
