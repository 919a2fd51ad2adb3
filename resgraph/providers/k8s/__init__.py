"""Kubernetes pack: manifest and live-cluster connections plus k8s.* resources."""

from resgraph.providers.certificate import Certificate
from resgraph.providers.k8s.connection import ApiConnection, K8sConnection, ManifestConnection
from resgraph.providers.k8s.resources import (
    Container,
    Deployment,
    Ingress,
    IngressRule,
    IngressTls,
    InitContainer,
    K8s,
    Namespace,
    Node,
    Pod,
    Secret,
)
from resgraph.runtime.resource import ResourceRegistry

RESOURCES = (
    K8s,
    Pod,
    Container,
    InitContainer,
    Node,
    Namespace,
    Deployment,
    Secret,
    Ingress,
    IngressRule,
    IngressTls,
    Certificate,
)


def register(registry: ResourceRegistry) -> None:
    for cls in RESOURCES:
        registry.register(cls)


__all__ = [
    "RESOURCES",
    "ApiConnection",
    "K8sConnection",
    "ManifestConnection",
    "register",
]
