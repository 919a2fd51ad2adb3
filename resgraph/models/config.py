"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class RuntimeConfig:
    """Field computation and identity resolution settings."""

    compute_timeout: float = 60.0
    transient_error_ttl: float = 30.0
    strict_identity: bool = False


@dataclass
class K8sConfig:
    """Kubernetes pack configuration.

    ``manifest_path`` switches the pack to offline manifest scanning;
    otherwise the live API is used.  ``selected_resource`` is the platform
    identifier of the asset being scanned, used as the ambient identity.
    """

    manifest_path: str = ""
    namespace: str = ""
    selected_resource: str = ""
    kubeconfig_context: str = ""


@dataclass
class MetricsConfig:
    """Prometheus exporter configuration."""

    enabled: bool = False
    port: int = 9464


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    json: bool = True


@dataclass
class ResgraphConfig:
    """Top-level resgraph configuration."""

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    k8s: K8sConfig = field(default_factory=K8sConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    log: LogConfig = field(default_factory=LogConfig)
