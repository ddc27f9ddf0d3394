"""Shared fixtures: an in-memory stand-in for the Kubernetes API objects
returned by ``kubernetes.client``, and throwaway TLS certificates.
"""

from __future__ import annotations

import copy
import functools
import json
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from kubernetes.client.exceptions import ApiException

from previewenvoperator.cachevolume import VolumeRef
from previewenvoperator.config import Config
from previewenvoperator.orchestrator import BuildOrchestrator

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeResponse:
    """Mimics the urllib3 response returned with ``_preload_content=False``."""

    def __init__(self, body: dict[str, Any]) -> None:
        self.data = json.dumps(body).encode("utf-8")


class FakeCluster:
    """An in-memory resource store with the create/read/delete semantics
    of the Kubernetes API: 409 on duplicate names, 404 on missing ones.

    Attributes
    ----------
    failures : `dict`
        Maps ``(kind, verb)`` to an exception to raise on that call.
    create_hooks : `dict`
        Maps a kind to a callable invoked (outside the store lock) before
        each create of that kind. Used to pause or line up concurrent
        creates.
    """

    def __init__(self) -> None:
        self.resources: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.create_hooks: dict[str, Callable[[dict[str, Any]], None]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()
        self._version = 0

    # The client module exposes API classes; instantiating them returns a
    # view onto this store.
    def AppsV1Api(self) -> FakeAppsV1Api:
        return FakeAppsV1Api(self)

    def CoreV1Api(self) -> FakeCoreV1Api:
        return FakeCoreV1Api(self)

    def get(self, kind: str, namespace: str, name: str) -> dict | None:
        with self._lock:
            return self.resources.get((kind, namespace, name))

    def names(self, kind: str, namespace: str = "default") -> list[str]:
        with self._lock:
            return sorted(
                name
                for (k, ns, name) in self.resources
                if k == kind and ns == namespace
            )

    def add(self, body: dict[str, Any], namespace: str = "default") -> None:
        self._create(body["kind"], namespace=namespace, body=body)

    def _fail(self, kind: str, verb: str) -> None:
        error = self.failures.get((kind, verb))
        if error is not None:
            raise error

    def _read(
        self,
        kind: str,
        *,
        name: str,
        namespace: str,
        _preload_content: bool = True,
    ) -> FakeResponse:
        self.calls.append(("read", kind, name))
        self._fail(kind, "read")
        with self._lock:
            body = self.resources.get((kind, namespace, name))
        if body is None:
            raise ApiException(status=404, reason="Not Found")
        return FakeResponse(body)

    def _create(
        self, kind: str, *, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        self.calls.append(("create", kind, body["metadata"]["name"]))
        hook = self.create_hooks.get(kind)
        if hook is not None:
            hook(body)
        self._fail(kind, "create")
        key = (kind, namespace, body["metadata"]["name"])
        with self._lock:
            if key in self.resources:
                raise ApiException(status=409, reason="Conflict")
            self._version += 1
            stored = copy.deepcopy(body)
            stored["metadata"]["namespace"] = namespace
            stored["metadata"]["resourceVersion"] = str(self._version)
            self.resources[key] = stored
        return stored

    def _delete(
        self, kind: str, *, name: str, namespace: str, **kwargs: Any
    ) -> None:
        self.calls.append(("delete", kind, name))
        self._fail(kind, "delete")
        with self._lock:
            if self.resources.pop((kind, namespace, name), None) is None:
                raise ApiException(status=404, reason="Not Found")


class _FakeApi:
    kinds: dict[str, str] = {}

    def __init__(self, cluster: FakeCluster) -> None:
        self._cluster = cluster

    def __getattr__(self, attr: str) -> Any:
        for verb in ("read", "create", "delete"):
            prefix = f"{verb}_namespaced_"
            if attr.startswith(prefix) and attr[len(prefix):] in self.kinds:
                kind = self.kinds[attr[len(prefix):]]
                return functools.partial(
                    getattr(self._cluster, f"_{verb}"), kind
                )
        raise AttributeError(attr)


class FakeAppsV1Api(_FakeApi):
    kinds = {"deployment": "Deployment"}


class FakeCoreV1Api(_FakeApi):
    kinds = {
        "service": "Service",
        "secret": "Secret",
        "persistent_volume_claim": "PersistentVolumeClaim",
    }


def make_certificate(
    common_name: str = "previewenv.example.com",
    *,
    not_after: datetime | None = None,
    private_key: bytes | None = None,
) -> tuple[bytes, bytes]:
    """Create a self-signed certificate, returning ``(cert_pem, key_pem)``.

    A new key is generated unless ``private_key`` is given.
    """
    if not_after is None:
        not_after = NOW + timedelta(days=90)
    if private_key is None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    else:
        key = serialization.load_pem_private_key(private_key, password=None)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=1))
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(common_name)]),
            critical=False,
        )
        .add_extension(
            x509.BasicConstraints(ca=True, path_length=None), critical=True
        )
        .sign(key, hashes.SHA256())
    )
    return (
        certificate.public_bytes(serialization.Encoding.PEM),
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def config() -> Config:
    return Config(
        token="s3cret",
        namespace="default",
        tls_cert="/etc/tls/tls.crt",
        tls_key="/etc/tls/tls.key",
    )


@pytest.fixture
def cache_volume() -> VolumeRef:
    return VolumeRef(namespace="default", name="cache", size="100Gi")


@pytest.fixture
def orchestrator(
    config: Config, cluster: FakeCluster, cache_volume: VolumeRef
) -> BuildOrchestrator:
    return BuildOrchestrator(
        config=config,
        k8s_client=cluster,
        cache_volume=cache_volume,
        clock=lambda: NOW,
    )


@pytest.fixture
def tls_files(tmp_path: Path) -> tuple[Path, Path]:
    cert, key = make_certificate()
    cert_path = tmp_path / "tls.crt"
    key_path = tmp_path / "tls.key"
    cert_path.write_bytes(cert)
    key_path.write_bytes(key)
    return cert_path, key_path
