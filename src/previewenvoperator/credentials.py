"""Transport credentials for the RPC listener.

Two providers are available. `StaticCredentialProvider` loads a certificate
and key once. `AutomatedCredentialProvider` enrolls with a certificate
authority, caches the result on disk and renews it from a background thread.
Handshakes read whichever certificate is current when they start; renewal
replaces it only after the new one has been written to the cache.
"""

from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

import grpc
import structlog
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .exceptions import CredentialError

__all__ = (
    "AutomatedCredentialProvider",
    "CertificateBundle",
    "CredentialProvider",
    "Enroller",
    "StaticCredentialProvider",
    "generate_private_key",
)


class CredentialProvider(Protocol):
    """Supplies transport credentials for the RPC listener."""

    def get_credentials(self) -> grpc.ServerCredentials:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


class Enroller(Protocol):
    """Obtains a certificate for a domain from a certificate authority."""

    def enroll(self, *, domain: str, email: str, private_key: bytes) -> bytes:
        """Return the PEM-encoded certificate chain for ``private_key``."""
        ...


@dataclass(frozen=True)
class CertificateBundle:
    """A PEM certificate chain with its private key."""

    certificate_chain: bytes
    private_key: bytes
    not_after: datetime

    @classmethod
    def from_pem(
        cls, certificate_chain: bytes, private_key: bytes
    ) -> CertificateBundle:
        """Parse and check a certificate chain and key.

        Raises
        ------
        previewenvoperator.exceptions.CredentialError
            Raised if either cannot be parsed.
        """
        try:
            certificate = x509.load_pem_x509_certificate(certificate_chain)
            serialization.load_pem_private_key(private_key, password=None)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Invalid certificate or key: {e}") from e
        return cls(
            certificate_chain=certificate_chain,
            private_key=private_key,
            not_after=certificate.not_valid_after_utc,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.not_after

    def needs_renewal(self, now: datetime, renew_before: timedelta) -> bool:
        return now >= self.not_after - renew_before

    def server_configuration(self) -> Any:
        return grpc.ssl_server_certificate_configuration(
            [(self.private_key, self.certificate_chain)]
        )


def generate_private_key() -> bytes:
    """Generate a PEM-encoded 2048-bit RSA private key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _current_datetime() -> datetime:
    return datetime.now(tz=timezone.utc)


class StaticCredentialProvider:
    """Serves a certificate and key loaded from files at startup.

    Raises
    ------
    previewenvoperator.exceptions.CredentialError
        Raised if the files cannot be read or parsed.
    """

    def __init__(self, *, cert_path: str, key_path: str) -> None:
        try:
            certificate_chain = Path(cert_path).read_bytes()
            private_key = Path(key_path).read_bytes()
        except OSError as e:
            raise CredentialError(
                f"Cannot read TLS certificate or key: {e}"
            ) from e
        self._bundle = CertificateBundle.from_pem(
            certificate_chain, private_key
        )

    def current(self) -> CertificateBundle:
        return self._bundle

    def get_credentials(self) -> grpc.ServerCredentials:
        return grpc.ssl_server_credentials(
            [(self._bundle.private_key, self._bundle.certificate_chain)]
        )

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class AutomatedCredentialProvider:
    """Obtains and renews a certificate for ``domain`` from a certificate
    authority.

    Parameters
    ----------
    domain : `str`
        The domain the certificate is issued for.
    email : `str`
        Contact address registered with the certificate authority.
    cache_dir : `str`
        Directory where the certificate and key are persisted between
        restarts.
    enroller : `Enroller`
        Performs the enrollment protocol.
    renew_before : `datetime.timedelta`
        Renew once the certificate is this close to expiring.
    check_interval : `datetime.timedelta`
        How often the background task checks for renewal.
    retry_interval : `datetime.timedelta`
        How soon to retry after a failed renewal.
    clock : callable, optional
        Returns the current timezone-aware time.
    logger
        Logger to use. Defaults to a structlog logger for this module.
    """

    def __init__(
        self,
        *,
        domain: str,
        email: str,
        cache_dir: str,
        enroller: Enroller,
        renew_before: timedelta = timedelta(days=30),
        check_interval: timedelta = timedelta(hours=12),
        retry_interval: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = _current_datetime,
        logger: Any | None = None,
    ) -> None:
        self._domain = domain
        self._email = email
        self._cache_dir = Path(cache_dir)
        self._enroller = enroller
        self._renew_before = renew_before
        self._check_interval = check_interval
        self._retry_interval = retry_interval
        self._clock = clock
        self._logger = logger or structlog.getLogger(__name__)

        # Replaced wholesale by renewal, never mutated. Readers take a
        # reference and use it without locking.
        self._bundle: CertificateBundle | None = None
        self._served: CertificateBundle | None = None

        self._renew_lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def cert_path(self) -> Path:
        return self._cache_dir / f"{self._domain}.crt"

    @property
    def key_path(self) -> Path:
        return self._cache_dir / f"{self._domain}.key"

    def load(self) -> CertificateBundle:
        """Load the cached certificate, enrolling if there is none or it is
        due for renewal.

        A cached certificate that is due for renewal but still valid is
        used if enrollment fails.

        Raises
        ------
        previewenvoperator.exceptions.CredentialError
            Raised if no valid certificate can be obtained.
        """
        bundle = self._read_cache()
        now = self._clock()
        if bundle is None or bundle.needs_renewal(now, self._renew_before):
            try:
                bundle = self._enroll()
            except Exception as e:
                if bundle is None or bundle.is_expired(now):
                    raise CredentialError(
                        f"Cannot obtain a certificate for {self._domain}: {e}"
                    ) from e
                self._logger.warning(
                    f"Enrollment failed, using cached certificate: {e}"
                )
        self._bundle = bundle
        return bundle

    def current(self) -> CertificateBundle:
        bundle = self._bundle
        if bundle is None:
            raise CredentialError("No certificate has been loaded")
        return bundle

    def get_credentials(self) -> grpc.ServerCredentials:
        bundle = self.current()
        self._served = bundle
        return grpc.dynamic_ssl_server_credentials(
            bundle.server_configuration(), self.fetch_configuration
        )

    def fetch_configuration(self) -> Any:
        """Return the configuration for a handshake if the certificate has
        changed since the last one, else `None`.

        gRPC calls this on every handshake. It only reads memory.
        """
        bundle = self._bundle
        if bundle is None or bundle is self._served:
            return None
        self._served = bundle
        return bundle.server_configuration()

    def renew(self, *, force: bool = False) -> bool:
        """Enroll for a new certificate if the current one is due.

        Returns
        -------
        renewed : `bool`
            `True` if a new certificate is now being served.

        Raises
        ------
        Exception
            Whatever the enroller or cache write raised. The current
            certificate keeps being served.
        """
        with self._renew_lock:
            bundle = self._bundle
            if (
                not force
                and bundle is not None
                and not bundle.needs_renewal(self._clock(), self._renew_before)
            ):
                return False
            self._bundle = self._enroll()
        self._logger.info(
            f"Renewed certificate for {self._domain}, valid until "
            f"{self._bundle.not_after.isoformat()}"
        )
        return True

    def start(self) -> None:
        """Start the background renewal task."""
        if self._thread is not None:
            return
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._run, name="certificate-renewal", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop the background renewal task and wait for it to exit."""
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        interval = self._check_interval
        while not self._stopping.wait(interval.total_seconds()):
            try:
                self.renew()
            except Exception:
                self._logger.exception(
                    "Certificate renewal failed; serving the current "
                    "certificate"
                )
                interval = self._retry_interval
            else:
                interval = self._check_interval

    def _enroll(self) -> CertificateBundle:
        self._logger.info(f"Requesting a certificate for {self._domain}")
        private_key = generate_private_key()
        chain = self._enroller.enroll(
            domain=self._domain, email=self._email, private_key=private_key
        )
        bundle = CertificateBundle.from_pem(chain, private_key)
        self._write_cache(bundle)
        return bundle

    def _read_cache(self) -> CertificateBundle | None:
        try:
            chain = self.cert_path.read_bytes()
            key = self.key_path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            return CertificateBundle.from_pem(chain, key)
        except CredentialError as e:
            self._logger.warning(
                f"Ignoring unreadable cached certificate: {e}"
            )
            return None

    def _write_cache(self, bundle: CertificateBundle) -> None:
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.key_path, bundle.private_key, mode=0o600)
        _atomic_write(self.cert_path, bundle.certificate_chain, mode=0o644)


def _atomic_write(path: Path, data: bytes, *, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
