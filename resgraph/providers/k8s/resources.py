"""Kubernetes resource pack.

Every object resource is listed through a collection field of the ``k8s``
root resource and carries the raw object as its internal payload.  Lookups
by id or name/namespace resolve through the same collections (see
:mod:`resgraph.runtime.identity`), so a pod found by name is the instance
the ``pods`` listing created.
"""

from __future__ import annotations

import base64
import binascii
import copy
from typing import TYPE_CHECKING, Any

from resgraph.observability.logging import get_logger
from resgraph.providers.certificate import certificates_from_pem
from resgraph.runtime.collection import by_namespaced_name
from resgraph.runtime.errors import NotFoundError, ResourceError
from resgraph.runtime.identity import init_namespaced_resource, init_resource
from resgraph.runtime.references import resolve_reference, resolve_references
from resgraph.runtime.resource import FieldClass, Resource, computed

if TYPE_CHECKING:
    from resgraph.runtime.runtime import Runtime

_log = get_logger("k8s.resources")

TLS_SECRET_TYPE = "kubernetes.io/tls"

_CLUSTER_ARGS = frozenset({"id", "uid", "resourceVersion", "name", "kind", "apiVersion", "created"})
_NAMESPACED_ARGS = _CLUSTER_ARGS | {"namespace"}


def obj_id(kind: str, namespace: str, name: str) -> str:
    """``kind:namespace:name`` with the kind lower-cased."""
    return f"{kind.lower()}:{namespace}:{name}"


def object_args(obj: dict[str, Any], *, namespaced: bool = True) -> dict[str, Any]:
    """Constructor arguments of an object resource, from the raw object."""
    meta = obj.get("metadata") or {}
    kind = obj.get("kind", "")
    namespace = meta.get("namespace") or ""
    args = {
        "id": obj_id(kind, namespace, meta.get("name", "")),
        "uid": meta.get("uid") or "",
        "resourceVersion": meta.get("resourceVersion") or "",
        "name": meta.get("name", ""),
        "kind": kind,
        "apiVersion": obj.get("apiVersion", ""),
        "created": str(meta.get("creationTimestamp") or ""),
    }
    if namespaced:
        args["namespace"] = namespace
    return args


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class K8s(Resource):
    """The cluster (or manifest) under scan."""

    type_name = "k8s"

    async def _list(self, kind: str, type_name: str) -> list[Resource]:
        conn = self.runtime.connection("k8s")
        cls = self.runtime.registry.lookup(type_name)
        namespaced = "namespace" in cls.arguments
        result = []
        for obj in await conn.list(kind):
            result.append(
                await self.runtime.create_resource(
                    type_name, object_args(obj, namespaced=namespaced), internal=obj
                )
            )
        return result

    @computed(field_class=FieldClass.TRANSIENT)
    async def pods(self) -> list[Resource]:
        return await self._list("Pod", "k8s.pod")

    @computed(field_class=FieldClass.TRANSIENT)
    async def nodes(self) -> list[Resource]:
        return await self._list("Node", "k8s.node")

    @computed(field_class=FieldClass.TRANSIENT)
    async def namespaces(self) -> list[Resource]:
        return await self._list("Namespace", "k8s.namespace")

    @computed(field_class=FieldClass.TRANSIENT)
    async def deployments(self) -> list[Resource]:
        return await self._list("Deployment", "k8s.deployment")

    @computed(field_class=FieldClass.TRANSIENT)
    async def secrets(self) -> list[Resource]:
        return await self._list("Secret", "k8s.secret")

    @computed(field_class=FieldClass.TRANSIENT)
    async def ingresses(self) -> list[Resource]:
        return await self._list("Ingress", "k8s.ingress")


# ---------------------------------------------------------------------------
# Objects
# ---------------------------------------------------------------------------


class K8sObject(Resource):
    """Base of resources backed by one Kubernetes object."""

    arguments = _NAMESPACED_ARGS
    #: Collection field of the ``k8s`` root listing this type.
    collection: str = ""

    @classmethod
    async def init(
        cls, runtime: Runtime, args: dict[str, Any]
    ) -> tuple[dict[str, Any], Resource | None]:
        if "namespace" in cls.arguments:
            return await init_namespaced_resource(
                runtime, args, collection=cls.collection, type_name=cls.type_name
            )
        return await init_resource(runtime, args, collection=cls.collection, type_name=cls.type_name)

    @property
    def obj(self) -> dict[str, Any]:
        return self.internal or {}

    @property
    def spec(self) -> dict[str, Any]:
        return self.obj.get("spec") or {}

    @computed
    def manifest(self) -> dict[str, Any]:
        return copy.deepcopy(self.obj)

    @computed
    def labels(self) -> dict[str, str]:
        return dict((self.obj.get("metadata") or {}).get("labels") or {})

    @computed
    def annotations(self) -> dict[str, str]:
        return dict((self.obj.get("metadata") or {}).get("annotations") or {})


async def _containers(owner: K8sObject, type_name: str, specs: list[dict[str, Any]] | None) -> list[Resource]:
    uid = owner.arg("uid") or owner.arg("id")
    result = []
    for spec in specs or []:
        name = spec.get("name", "")
        result.append(
            await owner.runtime.create_resource(
                type_name,
                {"uid": f"{uid}/{name}", "name": name, "image": spec.get("image", "")},
                internal=spec,
            )
        )
    return result


class Pod(K8sObject):
    type_name = "k8s.pod"
    collection = "pods"

    @computed(name="podSpec")
    def pod_spec(self) -> dict[str, Any]:
        return copy.deepcopy(self.spec)

    @computed
    async def containers(self) -> list[Resource]:
        pod_spec = await self.get("podSpec")
        return await _containers(self, "k8s.container", pod_spec.get("containers"))

    @computed(name="initContainers")
    async def init_containers(self) -> list[Resource]:
        pod_spec = await self.get("podSpec")
        return await _containers(self, "k8s.initContainer", pod_spec.get("initContainers"))

    @computed
    async def node(self) -> Resource | None:
        """The node the pod is scheduled on, None if unscheduled or unknown."""
        pod_spec = await self.get("podSpec")
        root = await self.runtime.create_resource("k8s")
        return await resolve_reference(root, "nodes", pod_spec.get("nodeName") or "")

    @computed(name="imagePullSecrets")
    async def image_pull_secrets(self) -> list[Resource]:
        pod_spec = await self.get("podSpec")
        namespace = self.arg("namespace", "")
        keys = [(namespace, ref.get("name", "")) for ref in pod_spec.get("imagePullSecrets") or []]
        if not keys:
            return []
        root = await self.runtime.create_resource("k8s")
        return await resolve_references(root, "secrets", keys, key_fn=by_namespaced_name)


class Container(Resource):
    type_name = "k8s.container"
    arguments = frozenset({"uid", "name", "image"})

    def identity_key(self) -> str:
        return str(self.arg("uid", ""))

    @property
    def spec(self) -> dict[str, Any]:
        return self.internal or {}

    @computed(name="imagePullPolicy")
    def image_pull_policy(self) -> str:
        return self.spec.get("imagePullPolicy", "")

    @computed
    def command(self) -> list[str]:
        return list(self.spec.get("command") or [])

    @computed
    def env(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self.spec.get("env") or [])

    @computed(name="securityContext")
    def security_context(self) -> dict[str, Any]:
        return copy.deepcopy(self.spec.get("securityContext") or {})

    @computed
    def resources(self) -> dict[str, Any]:
        return copy.deepcopy(self.spec.get("resources") or {})


class InitContainer(Container):
    type_name = "k8s.initContainer"


class Node(K8sObject):
    type_name = "k8s.node"
    arguments = _CLUSTER_ARGS
    collection = "nodes"

    @computed(name="nodeInfo")
    def node_info(self) -> dict[str, Any]:
        return dict((self.obj.get("status") or {}).get("nodeInfo") or {})


class Namespace(K8sObject):
    type_name = "k8s.namespace"
    arguments = _CLUSTER_ARGS
    collection = "namespaces"


class Deployment(K8sObject):
    type_name = "k8s.deployment"
    collection = "deployments"

    @computed(name="podSpec")
    def pod_spec(self) -> dict[str, Any]:
        return copy.deepcopy((self.spec.get("template") or {}).get("spec") or {})

    @computed
    async def containers(self) -> list[Resource]:
        pod_spec = await self.get("podSpec")
        return await _containers(self, "k8s.container", pod_spec.get("containers"))

    @computed(name="initContainers")
    async def init_containers(self) -> list[Resource]:
        pod_spec = await self.get("podSpec")
        return await _containers(self, "k8s.initContainer", pod_spec.get("initContainers"))

    @computed
    def replicas(self) -> int:
        replicas = self.spec.get("replicas")
        return 1 if replicas is None else int(replicas)


class Secret(K8sObject):
    type_name = "k8s.secret"
    collection = "secrets"

    @computed
    def type(self) -> str:
        return self.obj.get("type") or "Opaque"

    @computed
    async def certificates(self) -> list[Resource] | None:
        """Certificates of a TLS secret; None for other secret types."""
        if await self.get("type") != TLS_SECRET_TYPE:
            return None
        data = self.obj.get("data") or {}
        if "tls.crt" in data:
            try:
                pem = base64.b64decode(data["tls.crt"], validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ResourceError(f"invalid base64 in 'tls.crt': {exc}") from exc
        elif "tls.crt" in (self.obj.get("stringData") or {}):
            pem = str(self.obj["stringData"]["tls.crt"]).encode()
        else:
            raise NotFoundError("could not find the 'tls.crt' key", type_name=self.type_name, key="tls.crt")
        return await certificates_from_pem(self.runtime, pem)


class Ingress(K8sObject):
    type_name = "k8s.ingress"
    collection = "ingresses"

    @computed
    async def rules(self) -> list[Resource]:
        result = []
        for i, rule in enumerate(self.spec.get("rules") or []):
            paths = (rule.get("http") or {}).get("paths") or []
            result.append(
                await self.runtime.create_resource(
                    "k8s.ingressrule",
                    {
                        "id": f"{self.arg('id')}/rule{i}",
                        "host": rule.get("host", ""),
                        "httpPaths": copy.deepcopy(paths),
                    },
                )
            )
        return result

    @computed
    async def tls(self) -> list[Resource]:
        """TLS entries whose secret exists and holds certificates.

        Entries referencing a missing secret, or a secret without
        certificate data, are skipped.
        """
        entries = self.spec.get("tls") or []
        if not entries:
            return []
        root = await self.runtime.create_resource("k8s")
        try:
            await root.get("secrets")
        except ResourceError as exc:
            raise ResourceError(f"failed to fetch Secrets referenced in Ingress: {exc}") from exc

        namespace = self.arg("namespace", "")
        result = []
        for i, entry in enumerate(entries):
            secret = await resolve_reference(
                root, "secrets", (namespace, entry.get("secretName") or ""), key_fn=by_namespaced_name
            )
            if secret is None:
                _log.debug("ingress_tls_secret_missing", ingress=self.arg("id"), secret=entry.get("secretName"))
                continue
            try:
                certs = await secret.get("certificates")
            except ResourceError as exc:
                raise ResourceError("error getting certificate data from Secret") from exc
            if not certs:
                continue
            result.append(
                await self.runtime.create_resource(
                    "k8s.ingresstls",
                    {
                        "id": f"{self.arg('id')}-tls{i}",
                        "hosts": list(entry.get("hosts") or []),
                        "certificates": certs,
                    },
                )
            )
        return result


class IngressRule(Resource):
    type_name = "k8s.ingressrule"
    arguments = frozenset({"id", "host", "httpPaths"})


class IngressTls(Resource):
    type_name = "k8s.ingresstls"
    arguments = frozenset({"id", "hosts", "certificates"})
