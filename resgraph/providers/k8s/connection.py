"""Kubernetes connections.

Two backends expose the same listing interface to the k8s resource pack:

* :class:`ManifestConnection` -- offline, multi-document YAML manifests.
* :class:`ApiConnection` -- a live cluster through kubernetes-asyncio.

Both return plain ``dict`` objects shaped like the Kubernetes JSON
representation (``kind``, ``metadata``, ``spec``, ...), in listing order.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml

from resgraph.observability.logging import get_logger
from resgraph.runtime.errors import AmbiguousMatchError, NotFoundError, TransientIOError
from resgraph.runtime.identity import PlatformIdentity

_log = get_logger("k8s.connection")

#: Kinds the resource pack lists.
SUPPORTED_KINDS = ("Pod", "Node", "Namespace", "Deployment", "Secret", "Ingress")

_CLUSTER_SCOPED = frozenset({"Node", "Namespace"})


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


class K8sConnection(ABC):
    """Listing interface the k8s pack resolves every object through."""

    def __init__(self, *, namespace: str = "", selected_resource: str = "") -> None:
        self.namespace = namespace
        self.selected_resource = selected_resource

    @abstractmethod
    async def list(self, kind: str) -> list[dict[str, Any]]:
        """Return all objects of ``kind`` in listing order."""

    async def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        """Return the single object ``kind`` ``namespace/name``.

        Rarely used: resources resolve through :meth:`list`.
        """
        found = [
            obj
            for obj in await self.list(kind)
            if _metadata(obj).get("name") == name and (_metadata(obj).get("namespace") or "") == namespace
        ]
        if len(found) > 1:
            raise AmbiguousMatchError(f"multiple {kind.lower()}s found", candidates=len(found))
        if not found:
            raise NotFoundError(f"{kind.lower()} {name} not found", type_name=kind, key=name)
        return found[0]

    def platform_identity(self) -> PlatformIdentity | None:
        if not self.selected_resource:
            return None
        return PlatformIdentity.parse(self.selected_resource)

    def _in_scope(self, kind: str, obj: dict[str, Any]) -> bool:
        if not self.namespace or kind in _CLUSTER_SCOPED:
            return True
        return _metadata(obj).get("namespace") == self.namespace

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Manifest files
# ---------------------------------------------------------------------------


def _flatten(docs: list[Any]) -> list[dict[str, Any]]:
    objects: list[dict[str, Any]] = []
    for doc in docs:
        if not isinstance(doc, dict):
            continue
        kind = doc.get("kind", "")
        if isinstance(kind, str) and kind.endswith("List") and isinstance(doc.get("items"), list):
            objects.extend(_flatten(doc["items"]))
        elif kind:
            objects.append(doc)
    return objects


class ManifestConnection(K8sConnection):
    """Objects parsed from YAML manifest documents.

    Manifests carry no nodes; namespaces are derived from the namespaces
    the objects live in.
    """

    def __init__(
        self,
        manifest: str,
        *,
        namespace: str = "",
        selected_resource: str = "",
        source: str = "",
    ) -> None:
        super().__init__(namespace=namespace, selected_resource=selected_resource)
        try:
            docs = list(yaml.safe_load_all(manifest))
        except yaml.YAMLError as exc:
            raise TransientIOError(f"could not parse manifest {source or '<inline>'}: {exc}", cause=exc) from exc
        self.objects = _flatten(docs)
        self.source = source
        _log.debug("manifest_loaded", source=source, objects=len(self.objects))

    @classmethod
    def from_path(cls, path: str | Path, **kwargs: Any) -> ManifestConnection:
        """Load every ``*.yaml``/``*.yml`` file of ``path`` (a file or directory)."""
        root = Path(path)
        if root.is_dir():
            files = sorted(p for p in root.rglob("*") if p.suffix in (".yaml", ".yml"))
        else:
            files = [root]
        try:
            text = "\n---\n".join(p.read_text(encoding="utf-8") for p in files)
        except OSError as exc:
            raise TransientIOError(f"could not read manifest {root}: {exc}", cause=exc) from exc
        return cls(text, source=str(root.resolve()), **kwargs)

    @property
    def asset_id(self) -> str:
        """Stable id of the manifest source, the sha256 of its absolute path."""
        return hashlib.sha256(self.source.encode()).hexdigest()

    async def list(self, kind: str) -> list[dict[str, Any]]:
        if kind == "Node":
            return []
        if kind == "Namespace":
            return self._namespaces()
        return [obj for obj in self.objects if obj.get("kind") == kind and self._in_scope(kind, obj)]

    def _namespaces(self) -> list[dict[str, Any]]:
        names: dict[str, None] = {}
        for obj in self.objects:
            if obj.get("kind") == "Namespace":
                names[_metadata(obj).get("name", "")] = None
            ns = _metadata(obj).get("namespace")
            if ns:
                names[ns] = None
        return [
            {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}
            for name in names
            if name and (not self.namespace or name == self.namespace)
        ]


# ---------------------------------------------------------------------------
# Live cluster
# ---------------------------------------------------------------------------

# kind -> (api class attribute, cluster-wide list method, namespaced list method)
_LIST_METHODS: dict[str, tuple[str, str, str | None]] = {
    "Pod": ("CoreV1Api", "list_pod_for_all_namespaces", "list_namespaced_pod"),
    "Node": ("CoreV1Api", "list_node", None),
    "Namespace": ("CoreV1Api", "list_namespace", None),
    "Secret": ("CoreV1Api", "list_secret_for_all_namespaces", "list_namespaced_secret"),
    "Deployment": ("AppsV1Api", "list_deployment_for_all_namespaces", "list_namespaced_deployment"),
    "Ingress": ("NetworkingV1Api", "list_ingress_for_all_namespaces", "list_namespaced_ingress"),
}

_API_VERSIONS = {"AppsV1Api": "apps/v1", "NetworkingV1Api": "networking.k8s.io/v1"}


class ApiConnection(K8sConnection):
    """Objects listed from a live cluster with kubernetes-asyncio."""

    def __init__(self, api_client: Any, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_client = api_client

    @classmethod
    async def connect(cls, *, context: str = "", **kwargs: Any) -> ApiConnection:
        """Configure from the in-cluster service account or from kubeconfig."""
        from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]
        from kubernetes_asyncio import config as k8s_config  # type: ignore[import-untyped]

        try:
            # load_incluster_config() is synchronous in kubernetes-asyncio
            k8s_config.load_incluster_config()
            _log.info("k8s_client_configured", source="in_cluster")
        except k8s_config.ConfigException:
            await k8s_config.load_kube_config(context=context or None)
            _log.info("k8s_client_configured", source="kubeconfig", context=context or None)
        return cls(k8s_client.ApiClient(), **kwargs)

    async def list(self, kind: str) -> list[dict[str, Any]]:
        from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

        try:
            api_name, all_method, ns_method = _LIST_METHODS[kind]
        except KeyError:
            raise NotFoundError(f"kind {kind} is not supported", type_name=kind) from None
        api = getattr(k8s_client, api_name)(self._api_client)
        try:
            if self.namespace and ns_method is not None:
                result = await getattr(api, ns_method)(self.namespace)
            else:
                result = await getattr(api, all_method)()
        except k8s_client.ApiException as exc:
            raise TransientIOError(f"listing {kind} failed: {exc.status} {exc.reason}", cause=exc) from exc
        except OSError as exc:
            raise TransientIOError(f"listing {kind} failed: {exc}", cause=exc) from exc

        items = self._api_client.sanitize_for_serialization(getattr(result, "items", None) or [])
        api_version = _API_VERSIONS.get(api_name, "v1")
        for item in items:
            # list responses omit kind/apiVersion on the items
            item.setdefault("kind", kind)
            item.setdefault("apiVersion", api_version)
        _log.debug("k8s_kind_listed", kind=kind, count=len(items))
        return items

    async def close(self) -> None:
        await self._api_client.close()
