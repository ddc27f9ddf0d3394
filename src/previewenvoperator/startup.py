"""Code intended to run on start-up, before serving any requests."""

from __future__ import annotations

__all__ = (
    "Service",
    "configure_logging",
    "create_credential_provider",
    "start_service",
)

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from wsgiref.simple_server import WSGIServer

import grpc
import structlog
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from .addons import bootstrap_addons
from .cachevolume import VolumeRef, ensure_cache_volume
from .config import Config
from .credentials import (
    AutomatedCredentialProvider,
    CredentialProvider,
    StaticCredentialProvider,
)
from .exceptions import ConfigurationError, PreviewEnvError
from .k8s import create_k8sclient
from .letsencrypt import AcmeEnroller
from .metrics import start_metrics_server
from .orchestrator import BuildOrchestrator
from .rpc import EnvironmentsServicer, create_server


@dataclass
class Service:
    """The running operator service and everything it owns."""

    config: Config
    orchestrator: BuildOrchestrator
    cache_volume: VolumeRef
    credential_provider: CredentialProvider
    server: grpc.Server
    port: int
    metrics_server: WSGIServer | None = None

    def stop(self, grace: float = 5.0) -> None:
        """Stop serving, letting in-flight calls finish within ``grace``
        seconds, then stop credential renewal and the metrics endpoint.
        """
        self.server.stop(grace).wait()
        self.credential_provider.stop()
        if self.metrics_server is not None:
            self.metrics_server.shutdown()
            self.metrics_server.server_close()


def configure_logging(level: str) -> None:
    """Configure structlog to drop messages below ``level``."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        )
    )


def create_credential_provider(
    config: Config, logger: Any | None = None
) -> CredentialProvider:
    """Create and load the credential provider selected by ``config``.

    Raises
    ------
    previewenvoperator.exceptions.CredentialError
        Raised if no credential can be obtained.
    """
    if logger is None:
        logger = structlog.getLogger(__name__)

    if not config.use_acme:
        logger.info(f"Loading TLS certificate from {config.tls_cert}")
        return StaticCredentialProvider(
            cert_path=config.tls_cert, key_path=config.tls_key
        )

    logger.info(f"Using ACME certificates for {config.acme_domain}")
    enroller = AcmeEnroller(
        directory_url=config.acme_directory_url,
        account_key_path=str(Path(config.acme_cache_dir) / "acme-account.key"),
        http_port=config.acme_http_port,
    )
    provider = AutomatedCredentialProvider(
        domain=config.acme_domain,
        email=config.acme_email,
        cache_dir=config.acme_cache_dir,
        enroller=enroller,
    )
    provider.load()
    return provider


def start_service(
    config: Config,
    *,
    k8s_client: Any | None = None,
    credential_provider: CredentialProvider | None = None,
    enable_metrics: bool = True,
    logger: Any | None = None,
) -> Service:
    """Bootstrap the cluster and start serving requests.

    Addons are reconciled first, then the shared cache claim, then
    transport credentials are obtained. Only then does the RPC listener
    start, so no build is accepted before the cache claim exists.

    Raises
    ------
    previewenvoperator.exceptions.PreviewEnvError
        Raised if any step fails. The caller should treat this as fatal.
    """
    if logger is None:
        logger = structlog.getLogger(__name__)
    if k8s_client is None:
        try:
            k8s_client = create_k8sclient()
        except ConfigException as e:
            raise ConfigurationError(
                f"Cannot configure Kubernetes client: {e}"
            ) from e

    bootstrap_addons(config, k8s_client=k8s_client, logger=logger)

    try:
        cache_volume = ensure_cache_volume(
            namespace=config.namespace,
            size=config.cache_size,
            name=config.cache_name,
            storage_class=config.cache_storage_class,
            k8s_client=k8s_client,
            logger=logger,
        )
    except ApiException as e:
        raise PreviewEnvError(
            f"Cannot provision cache claim ({e.status} {e.reason})"
        ) from e

    if credential_provider is None:
        credential_provider = create_credential_provider(config, logger)
    credentials = credential_provider.get_credentials()

    orchestrator = BuildOrchestrator(
        config=config, k8s_client=k8s_client, cache_volume=cache_volume
    )
    servicer = EnvironmentsServicer(orchestrator, token=config.token)
    server, port = create_server(
        servicer,
        port=config.port,
        credentials=credentials,
        workers=config.rpc_workers,
    )
    if port == 0:
        raise PreviewEnvError(f"Cannot listen on port {config.port}")

    metrics_server = None
    if enable_metrics:
        try:
            metrics_server = start_metrics_server(
                config.metrics_port, config.metrics_path
            )
        except OSError as e:
            server.stop(None)
            raise PreviewEnvError(
                f"Cannot serve metrics on port {config.metrics_port}: {e}"
            ) from e
        logger.info(
            f"Serving metrics on :{config.metrics_port}{config.metrics_path}"
        )

    server.start()
    credential_provider.start()
    logger.info(f"Serving environments API on port {port}")

    return Service(
        config=config,
        orchestrator=orchestrator,
        cache_volume=cache_volume,
        credential_provider=credential_provider,
        server=server,
        port=port,
        metrics_server=metrics_server,
    )
