"""Application bootstrap for resgraph.

Wires the components in dependency order:
config → logging → metrics → connections → registry → runtime

``Runtime.close()`` tears everything down again: in-flight computations are
cancelled, watches released and connections closed.
"""

from __future__ import annotations

from typing import Any

from resgraph import __version__
from resgraph.config import load_config
from resgraph.models.config import K8sConfig, ResgraphConfig
from resgraph.observability.logging import bind_scan_target, get_logger, setup_logging
from resgraph.observability.metrics import start_metrics_server
from resgraph.providers import k8s as k8s_pack
from resgraph.providers import os as os_pack
from resgraph.providers.k8s.connection import ApiConnection, K8sConnection, ManifestConnection
from resgraph.providers.os.connection import LocalConnection
from resgraph.runtime.resource import ResourceRegistry
from resgraph.runtime.runtime import Runtime


def default_registry() -> ResourceRegistry:
    """Registry holding every resource type shipped with resgraph."""
    registry = ResourceRegistry()
    k8s_pack.register(registry)
    os_pack.register(registry)
    return registry


async def connect_k8s(config: K8sConfig, *, live: bool = True) -> K8sConnection | None:
    """Open the k8s connection: the manifest if one is configured, else the live API.

    A live cluster that cannot be reached is not fatal; the k8s resources
    then fail with a misconfiguration error when used.
    """
    log = get_logger("app")
    kwargs: dict[str, Any] = {
        "namespace": config.namespace,
        "selected_resource": config.selected_resource,
    }
    if config.manifest_path:
        conn = ManifestConnection.from_path(config.manifest_path, **kwargs)
        log.info("k8s_manifest_loaded", path=config.manifest_path, objects=len(conn.objects))
        return conn
    if not live:
        return None
    try:
        return await ApiConnection.connect(context=config.kubeconfig_context, **kwargs)
    except Exception as exc:
        log.warning("k8s_connection_unavailable", error=str(exc))
        return None


async def build_runtime(config: ResgraphConfig | None = None, *, live_k8s: bool = True) -> Runtime:
    """Build a ready-to-use runtime from ``config`` (default: the environment)."""
    # --- 1. Configuration -----------------------------------------------
    if config is None:
        config = load_config()

    # --- 2. Logging -----------------------------------------------------
    setup_logging(config.log.level, json_output=config.log.json)
    log = get_logger("app")
    log.info("resgraph_starting", version=__version__)

    # --- 3. Metrics -----------------------------------------------------
    if config.metrics.enabled:
        start_metrics_server(config.metrics.port)
        log.info("metrics_server_started", port=config.metrics.port)

    # --- 4. Connections -------------------------------------------------
    local = LocalConnection()
    connections: dict[str, Any] = {"os": local}
    k8s_conn = await connect_k8s(config.k8s, live=live_k8s)
    if k8s_conn is not None:
        connections["k8s"] = k8s_conn
    if isinstance(k8s_conn, ManifestConnection):
        bind_scan_target(k8s_conn.asset_id)
    elif config.k8s.selected_resource:
        bind_scan_target(config.k8s.selected_resource)

    # --- 5. Registry and runtime ----------------------------------------
    runtime = Runtime(
        default_registry(),
        config.runtime,
        connections=connections,
        platform_identity=k8s_conn.platform_identity() if k8s_conn is not None else None,
        watcher=local.watcher,
    )
    log.info("resgraph_started", connections=sorted(connections))
    return runtime
