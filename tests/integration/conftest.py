"""Shared fixtures for resgraph integration tests.

Provides a realistic multi-document Kubernetes manifest (pods in two
namespaces, a deployment, secrets including a TLS secret with a freshly
generated certificate, and ingresses) and runtimes wired with the shipped
resource packs, so tests exercise full lookups without a real cluster.
"""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from resgraph.app import default_registry
from resgraph.models.config import RuntimeConfig
from resgraph.providers.k8s.connection import ManifestConnection
from resgraph.runtime.runtime import Runtime

# ---------------------------------------------------------------------------
# Certificate helpers
# ---------------------------------------------------------------------------


def make_certificate(common_name: str = "web.example.com") -> bytes:
    """Return a self-signed PEM certificate for ``common_name``."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(Encoding.PEM)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

MANIFEST_TEMPLATE = """\
apiVersion: v1
kind: Pod
metadata:
  name: mondoo
  namespace: default
  uid: pod-uid-1
  labels:
    app: mondoo
  annotations:
    team: security
spec:
  nodeName: node-1
  imagePullSecrets:
  - name: regcred
  - name: not-there
  initContainers:
  - name: init
    image: busybox:1.36
  containers:
  - name: client
    image: mondoo/client:latest
    imagePullPolicy: Always
    command: [cnspec, serve]
    securityContext:
      runAsNonRoot: true
---
apiVersion: v1
kind: Pod
metadata:
  name: mondoo
  namespace: prod
  uid: pod-uid-2
spec:
  containers:
  - name: client
    image: mondoo/client:9
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  namespace: default
  uid: dep-uid-1
spec:
  template:
    spec:
      containers:
      - name: nginx
        image: nginx:1.25
---
apiVersion: v1
kind: List
items:
- apiVersion: v1
  kind: Secret
  metadata:
    name: regcred
    namespace: default
  type: kubernetes.io/dockerconfigjson
  data:
    .dockerconfigjson: e30=
- apiVersion: v1
  kind: Secret
  metadata:
    name: web-tls
    namespace: default
  type: kubernetes.io/tls
  data:
    tls.crt: __TLS_CRT__
    tls.key: ""
---
apiVersion: networking.k8s.io/v1
kind: Ingress
metadata:
  name: x
  namespace: default
spec:
  tls:
  - hosts:
    - missing.example.com
    secretName: does-not-exist
---
apiVersion: networking.k8s.io/v1
kind: Ingress
metadata:
  name: web
  namespace: default
spec:
  rules:
  - host: web.example.com
    http:
      paths:
      - path: /
        pathType: Prefix
        backend:
          service:
            name: web
            port:
              number: 80
  tls:
  - hosts:
    - web.example.com
    secretName: web-tls
  - hosts:
    - other.example.com
    secretName: does-not-exist
"""

SELECTED_PROD_POD = "//platformid.api.mondoo.app/runtime/k8s/uid/abc/namespace/prod/pods/name/mondoo"


@pytest.fixture(scope="session")
def tls_certificate() -> bytes:
    return make_certificate()


@pytest.fixture
def manifest_text(tls_certificate: bytes) -> str:
    return MANIFEST_TEMPLATE.replace("__TLS_CRT__", base64.b64encode(tls_certificate).decode())


@pytest.fixture
def manifest_path(tmp_path: Path, manifest_text: str) -> Path:
    path = tmp_path / "cluster.yaml"
    path.write_text(manifest_text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Runtimes
# ---------------------------------------------------------------------------


def make_runtime(
    k8s: ManifestConnection | None = None,
    *,
    os_conn: Any = None,
    watcher: Any = None,
    strict: bool = False,
) -> Runtime:
    """Runtime over the shipped resource packs with the given connections."""
    connections: dict[str, Any] = {}
    if k8s is not None:
        connections["k8s"] = k8s
    if os_conn is not None:
        connections["os"] = os_conn
    return Runtime(
        default_registry(),
        RuntimeConfig(strict_identity=strict),
        connections=connections,
        platform_identity=k8s.platform_identity() if k8s is not None else None,
        watcher=watcher,
    )


@pytest.fixture
async def runtime(manifest_text: str) -> AsyncIterator[Runtime]:
    rt = make_runtime(ManifestConnection(manifest_text, source="cluster.yaml"))
    yield rt
    await rt.close()

