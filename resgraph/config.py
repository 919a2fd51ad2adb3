"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from resgraph.models.config import (
    K8sConfig,
    LogConfig,
    MetricsConfig,
    ResgraphConfig,
    RuntimeConfig,
)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"RESGRAPH_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float, min_val: float | None = None, max_val: float | None = None) -> float:
    val = float(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def load_config() -> ResgraphConfig:
    """Load configuration from RESGRAPH_* environment variables."""
    return ResgraphConfig(
        runtime=RuntimeConfig(
            compute_timeout=_env_float("COMPUTE_TIMEOUT", 60.0, min_val=1.0, max_val=600.0),
            transient_error_ttl=_env_float("TRANSIENT_ERROR_TTL", 30.0, min_val=0.0, max_val=3600.0),
            strict_identity=_env_bool("STRICT_IDENTITY", False),
        ),
        k8s=K8sConfig(
            manifest_path=_env("K8S_MANIFEST", ""),
            namespace=_env("K8S_NAMESPACE", ""),
            selected_resource=_env("K8S_SELECTED_RESOURCE", ""),
            kubeconfig_context=_env("K8S_CONTEXT", ""),
        ),
        metrics=MetricsConfig(
            enabled=_env_bool("METRICS_ENABLED", False),
            port=_env_int("METRICS_PORT", 9464, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
            json=_env_bool("LOG_JSON", True),
        ),
    )
