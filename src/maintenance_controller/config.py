from __future__ import annotations

from dataclasses import dataclass
import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class AppConfig:
    kubeconfig_path: str | None = _env_optional("MMC_KUBECONFIG")
    context: str | None = _env_optional("MMC_CONTEXT")
    in_cluster: bool = _env_flag("MMC_IN_CLUSTER")
    watch_namespace: str | None = _env_optional("MMC_WATCH_NAMESPACE")
    resync_seconds: int = int(os.getenv("MMC_RESYNC_SECONDS", "300"))
    request_timeout_seconds: int = int(os.getenv("MMC_REQUEST_TIMEOUT_SECONDS", "20"))
    transition_requeue_seconds: float = float(os.getenv("MMC_TRANSITION_REQUEUE_SECONDS", "10"))
    workers: int = int(os.getenv("MMC_WORKERS", "2"))
    log_level: str = os.getenv("MMC_LOG_LEVEL", "INFO")


def validate_config(config: AppConfig) -> None:
    if config.resync_seconds <= 0:
        raise ValueError("resync_seconds must be positive")
    if config.request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")
    if config.transition_requeue_seconds <= 0:
        raise ValueError("transition_requeue_seconds must be positive")
    if config.workers <= 0:
        raise ValueError("workers must be positive")
