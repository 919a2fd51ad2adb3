"""Configuration data structures for resgraph."""

from resgraph.models.config import (
    K8sConfig,
    LogConfig,
    MetricsConfig,
    ResgraphConfig,
    RuntimeConfig,
)

__all__ = [
    "K8sConfig",
    "LogConfig",
    "MetricsConfig",
    "ResgraphConfig",
    "RuntimeConfig",
]
