"""Operator configuration, read once from the environment at startup.

Every option is an environment variable prefixed with ``PREVIEWENV_``. The
resulting `Config` is immutable and handed to each component's constructor;
nothing else in the package reads `os.environ`.
"""

from __future__ import annotations

import enum
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from .exceptions import ConfigurationError
from .expiry import parse_ttl

__all__ = (
    "ENV_PREFIX",
    "AddonDescriptor",
    "AddonKind",
    "Config",
    "RegistryCredential",
)

ENV_PREFIX = "PREVIEWENV_"

DEFAULT_ACME_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"

_QUANTITY = re.compile(r"^\d+(\.\d+)?(Ki|Mi|Gi|Ti|Pi|Ei|k|M|G|T|P|E)?$")

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class AddonKind(enum.Enum):
    """The cluster addons, in the order they are bootstrapped."""

    INGRESS = "ingress"
    REMOTE_SHELL_GATEWAY = "remote-shell-gateway"
    GARBAGE_COLLECTOR = "garbage-collector"


@dataclass(frozen=True)
class AddonDescriptor:
    """A cluster-level singleton addon workload."""

    kind: AddonKind
    name: str
    image: str
    version: str
    exposed_port: int | None = None

    @property
    def image_ref(self) -> str:
        return f"{self.image}:{self.version}"


@dataclass(frozen=True)
class RegistryCredential:
    """Credentials for pulling private images from a container registry."""

    registry: str
    username: str = ""
    password: str = ""
    email: str = ""
    auth: str = ""

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, str] | None
    ) -> RegistryCredential | None:
        """Build a credential from a request or environment mapping, or
        return `None` if no registry is named.
        """
        if not data or not data.get("registry"):
            return None
        return cls(
            registry=str(data["registry"]),
            username=str(data.get("username", "")),
            password=str(data.get("password", "")),
            email=str(data.get("email", "")),
            auth=str(data.get("auth", "")),
        )


@dataclass(frozen=True)
class Config:
    """Immutable operator configuration."""

    token: str
    port: int = 443
    namespace: str = "default"

    tls_cert: str = ""
    tls_key: str = ""

    acme_domain: str = ""
    acme_email: str = "admin@example.com"
    acme_cache_dir: str = "/tmp"
    acme_directory_url: str = DEFAULT_ACME_DIRECTORY
    acme_http_port: int = 80

    cache_name: str = "cache"
    cache_size: str = "100Gi"
    cache_storage_class: str = "cache"

    addons: tuple[AddonDescriptor, ...] = field(
        default_factory=lambda: (
            AddonDescriptor(
                AddonKind.INGRESS, "traefik", "traefik", "1.7", 80
            ),
            AddonDescriptor(
                AddonKind.REMOTE_SHELL_GATEWAY,
                "ssh-server",
                "previousnext/k8s-ssh-server",
                "0.0.5",
                2222,
            ),
            AddonDescriptor(
                AddonKind.GARBAGE_COLLECTOR,
                "black-death",
                "previousnext/k8s-black-death",
                "0.0.2",
            ),
        )
    )

    registry_credential: RegistryCredential | None = None

    metrics_port: int = 9000
    metrics_path: str = "/metrics"
    metrics_apache_port: int = 9117

    default_ttl: str = "24h"
    rpc_workers: int = 10
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.token:
            raise ConfigurationError(f"{ENV_PREFIX}AUTH_TOKEN must be set")
        for name in ("port", "acme_http_port", "metrics_port",
                     "metrics_apache_port"):
            value = getattr(self, name)
            if not 0 < value < 65536:
                raise ConfigurationError(f"{name} {value} is not a valid port")
        if self.rpc_workers < 1:
            raise ConfigurationError("rpc_workers must be at least 1")
        if bool(self.tls_cert) != bool(self.tls_key):
            raise ConfigurationError(
                "TLS certificate and key must be configured together"
            )
        if not self.tls_cert and not self.acme_domain:
            raise ConfigurationError(
                "Configure either a TLS certificate and key or an ACME domain"
            )
        if self.tls_cert and self.acme_domain:
            raise ConfigurationError(
                "Configure either a TLS certificate and key or an ACME"
                " domain, not both"
            )
        if self.log_level not in _LOG_LEVELS:
            raise ConfigurationError(
                f"Log level {self.log_level!r} must be one of"
                f" {', '.join(_LOG_LEVELS)}"
            )
        if not _QUANTITY.match(self.cache_size):
            raise ConfigurationError(
                f"Cache size {self.cache_size!r} is not a valid quantity"
            )
        try:
            parse_ttl(self.default_ttl)
        except ValueError as err:
            raise ConfigurationError(str(err)) from err
        kinds = [addon.kind for addon in self.addons]
        if kinds != list(AddonKind):
            raise ConfigurationError(
                "Addons must be declared once each, in bootstrap order"
            )

    @property
    def use_acme(self) -> bool:
        return not self.tls_cert

    def addon(self, kind: AddonKind) -> AddonDescriptor:
        for descriptor in self.addons:
            if descriptor.kind is kind:
                return descriptor
        raise KeyError(kind)

    @classmethod
    def from_environ(
        cls, environ: Mapping[str, str] | None = None
    ) -> Config:
        """Build the configuration from environment variables.

        Parameters
        ----------
        environ : `dict`, optional
            The environment to read. Defaults to `os.environ`.

        Raises
        ------
        previewenvoperator.exceptions.ConfigurationError
            Raised if a value is missing or invalid.
        """
        if environ is None:
            environ = os.environ

        def get(key: str, default: str = "") -> str:
            return environ.get(f"{ENV_PREFIX}{key}", default)

        def get_int(key: str, default: int) -> int:
            raw = get(key, str(default))
            try:
                return int(raw)
            except ValueError as err:
                raise ConfigurationError(
                    f"{ENV_PREFIX}{key}={raw!r} is not an integer"
                ) from err

        addons = (
            AddonDescriptor(
                kind=AddonKind.INGRESS,
                name=get("INGRESS_NAME", "traefik"),
                image=get("INGRESS_IMAGE", "traefik"),
                version=get("INGRESS_VERSION", "1.7"),
                exposed_port=get_int("INGRESS_PORT", 80),
            ),
            AddonDescriptor(
                kind=AddonKind.REMOTE_SHELL_GATEWAY,
                name=get("SSH_NAME", "ssh-server"),
                image=get("SSH_IMAGE", "previousnext/k8s-ssh-server"),
                version=get("SSH_VERSION", "0.0.5"),
                exposed_port=get_int("SSH_PORT", 2222),
            ),
            AddonDescriptor(
                kind=AddonKind.GARBAGE_COLLECTOR,
                name=get("GC_NAME", "black-death"),
                image=get("GC_IMAGE", "previousnext/k8s-black-death"),
                version=get("GC_VERSION", "0.0.2"),
            ),
        )
        for addon in addons:
            if addon.exposed_port is not None and not (
                0 < addon.exposed_port < 65536
            ):
                raise ConfigurationError(
                    f"Addon {addon.name} port {addon.exposed_port} is invalid"
                )

        registry_credential = RegistryCredential.from_mapping(
            {
                "registry": get("DOCKERCFG_REGISTRY"),
                "username": get("DOCKERCFG_USERNAME"),
                "password": get("DOCKERCFG_PASSWORD"),
                "email": get("DOCKERCFG_EMAIL"),
                "auth": get("DOCKERCFG_AUTH"),
            }
        )

        return cls(
            token=get("AUTH_TOKEN"),
            port=get_int("PORT", 443),
            namespace=get("NAMESPACE", "default"),
            tls_cert=get("TLS_CERT"),
            tls_key=get("TLS_KEY"),
            acme_domain=get("ACME_DOMAIN"),
            acme_email=get("ACME_EMAIL", "admin@example.com"),
            acme_cache_dir=get("ACME_CACHE_DIR", "/tmp"),
            acme_directory_url=get(
                "ACME_DIRECTORY_URL", DEFAULT_ACME_DIRECTORY
            ),
            acme_http_port=get_int("ACME_HTTP_PORT", 80),
            cache_name=get("CACHE_NAME", "cache"),
            cache_size=get("CACHE_SIZE", "100Gi"),
            cache_storage_class=get("CACHE_STORAGE_CLASS", "cache"),
            addons=addons,
            registry_credential=registry_credential,
            metrics_port=get_int("METRICS_PORT", 9000),
            metrics_path=get("METRICS_PATH", "/metrics"),
            metrics_apache_port=get_int("METRICS_APACHE_PORT", 9117),
            default_ttl=get("DEFAULT_TTL", "24h"),
            rpc_workers=get_int("RPC_WORKERS", 10),
            log_level=get("LOG_LEVEL", "INFO").upper(),
        )
