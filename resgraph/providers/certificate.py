"""x509 certificate resource shared by the vendor packs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding

from resgraph.runtime.errors import ResourceError
from resgraph.runtime.resource import Resource, computed

if TYPE_CHECKING:
    from resgraph.runtime.runtime import Runtime


class Certificate(Resource):
    """One x509 certificate, keyed by its SHA-256 fingerprint."""

    type_name = "certificate"
    arguments = frozenset({"id", "pem"})

    def _cert(self) -> x509.Certificate:
        cert = self.internal
        if cert is None:
            cert = x509.load_pem_x509_certificate(str(self.arg("pem", "")).encode())
        return cert

    @computed
    def subject(self) -> str:
        return self._cert().subject.rfc4514_string()

    @computed
    def issuer(self) -> str:
        return self._cert().issuer.rfc4514_string()

    @computed
    def serial(self) -> str:
        return format(self._cert().serial_number, "x")

    @computed(name="notBefore")
    def not_before(self) -> str:
        return self._cert().not_valid_before_utc.isoformat()

    @computed(name="notAfter")
    def not_after(self) -> str:
        return self._cert().not_valid_after_utc.isoformat()

    @computed(name="isCA")
    def is_ca(self) -> bool:
        try:
            ext = self._cert().extensions.get_extension_for_class(x509.BasicConstraints)
        except x509.ExtensionNotFound:
            return False
        return bool(ext.value.ca)


def fingerprint(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA256()).hex()


async def certificates_from_pem(runtime: Runtime, data: bytes) -> list[Any]:
    """Parse a PEM bundle into ``certificate`` resources."""
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        raise ResourceError(f"could not parse certificate data: {exc}") from exc
    result = []
    for cert in certs:
        pem = cert.public_bytes(Encoding.PEM).decode()
        result.append(
            await runtime.create_resource(
                "certificate",
                {"id": fingerprint(cert), "pem": pem},
                internal=cert,
            )
        )
    return result
