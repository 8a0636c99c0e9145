"""Shared fixtures: an in-memory Kubernetes core API and certificate factories."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from kubernetes import client
from kubernetes.client.rest import ApiException

# =============================================================================
# Fake Kubernetes API
# =============================================================================


def _clone_secret(secret: client.V1Secret) -> client.V1Secret:
    meta = secret.metadata
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=meta.name,
            namespace=meta.namespace,
            uid=meta.uid,
            resource_version=meta.resource_version,
            annotations=dict(meta.annotations) if meta.annotations is not None else None,
        ),
        type=secret.type,
        data=dict(secret.data) if secret.data is not None else None,
    )


class FakeCoreV1Api:
    """In-memory CoreV1Api covering secrets, namespaces and events.

    Secrets use optimistic concurrency: replacing with a stale resource_version
    fails with 409 like the real API server.
    """

    def __init__(self) -> None:
        self.secrets: Dict[Tuple[str, str], client.V1Secret] = {}
        self.namespaces: List[client.V1Namespace] = []
        self.events: Dict[Tuple[str, str], client.CoreV1Event] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # -- test helpers ---------------------------------------------------------

    def add_namespace(
        self, name: str, phase: str = "Active", created: Optional[datetime] = None
    ) -> client.V1Namespace:
        namespace = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=name, creation_timestamp=created),
            status=client.V1NamespaceStatus(phase=phase),
        )
        self.namespaces.append(namespace)
        return namespace

    def add_secret(
        self,
        namespace: str,
        name: str,
        annotations: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, str]] = None,
    ) -> client.V1Secret:
        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                uid=f"uid-{namespace}-{name}",
                resource_version=self._next_version(),
                annotations=annotations,
            ),
            type="Opaque",
            data=data,
        )
        self.secrets[(namespace, name)] = secret
        return _clone_secret(secret)

    def stored(self, namespace: str, name: str) -> client.V1Secret:
        return self.secrets[(namespace, name)]

    # -- secrets --------------------------------------------------------------

    def read_namespaced_secret(self, name: str, namespace: str) -> client.V1Secret:
        self.calls.append(("read", namespace, name))
        if (namespace, name) not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        return _clone_secret(self.secrets[(namespace, name)])

    def create_namespaced_secret(self, namespace: str, body: client.V1Secret) -> client.V1Secret:
        self.calls.append(("create", namespace, body.metadata.name))
        if (namespace, body.metadata.name) in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        stored = _clone_secret(body)
        stored.metadata.namespace = namespace
        stored.metadata.resource_version = self._next_version()
        self.secrets[(namespace, body.metadata.name)] = stored
        return _clone_secret(stored)

    def replace_namespaced_secret(
        self, name: str, namespace: str, body: client.V1Secret
    ) -> client.V1Secret:
        self.calls.append(("replace", namespace, name))
        current = self.secrets.get((namespace, name))
        if current is None:
            raise ApiException(status=404, reason="Not Found")
        if body.metadata.resource_version != current.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        stored = _clone_secret(body)
        stored.metadata.resource_version = self._next_version()
        self.secrets[(namespace, name)] = stored
        return _clone_secret(stored)

    def list_secret_for_all_namespaces(self, **kwargs):
        return SimpleNamespace(items=[_clone_secret(s) for s in self.secrets.values()])

    # -- namespaces -----------------------------------------------------------

    def list_namespace(self, **kwargs):
        return SimpleNamespace(items=list(self.namespaces))

    # -- events ---------------------------------------------------------------

    def read_namespaced_event(self, name: str, namespace: str) -> client.CoreV1Event:
        if (namespace, name) not in self.events:
            raise ApiException(status=404, reason="Not Found")
        return self.events[(namespace, name)]

    def create_namespaced_event(self, namespace: str, body: client.CoreV1Event):
        self.events[(namespace, body.metadata.name)] = body
        return body

    def replace_namespaced_event(self, name: str, namespace: str, body: client.CoreV1Event):
        self.events[(namespace, name)] = body
        return body


@pytest.fixture
def core_api() -> FakeCoreV1Api:
    return FakeCoreV1Api()


# =============================================================================
# Certificates
# =============================================================================


def _build_certificate(common_name: str, not_after: datetime) -> Tuple[bytes, bytes]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=90))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return certificate.public_bytes(serialization.Encoding.PEM), key_pem


@pytest.fixture
def make_certificate() -> Callable[..., Tuple[bytes, bytes]]:
    """Factory returning (certificate_pem, key_pem) of a self-signed certificate."""

    def factory(
        common_name: str = "example.com",
        not_after: datetime = datetime(2030, 1, 1, tzinfo=timezone.utc),
    ) -> Tuple[bytes, bytes]:
        return _build_certificate(common_name, not_after)

    return factory
