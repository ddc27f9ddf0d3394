"""Bootstrap the cluster addons the environments depend on."""

from __future__ import annotations

import enum
from typing import Any

import structlog
from kubernetes.client.exceptions import ApiException

from .config import AddonDescriptor, AddonKind, Config
from .deployments import create_addon_deployment
from .exceptions import AddonBootstrapError, ResourceExistsError
from .k8s import create_resource, get_deployment, is_not_found

__all__ = ("EnsureResult", "bootstrap_addons", "ensure_addon")


class EnsureResult(enum.Enum):
    """Outcome of reconciling a single addon."""

    CREATED = "Created"
    ALREADY_PRESENT = "AlreadyPresent"


def ensure_addon(
    descriptor: AddonDescriptor,
    *,
    namespace: str,
    k8s_client: Any,
    logger: Any | None = None,
) -> EnsureResult:
    """Create the addon's workload unless one with its name exists.

    An existing workload is left untouched, even if it runs a different
    version than ``descriptor`` asks for.

    Parameters
    ----------
    descriptor : `previewenvoperator.config.AddonDescriptor`
        The addon to reconcile.
    namespace : `str`
        The Kubernetes namespace to deploy the addon into.
    k8s_client
        A Kubernetes client (see `previewenvoperator.k8s.create_k8sclient`).
    logger
        Logger to use. Defaults to a structlog logger for this module.

    Returns
    -------
    result : `EnsureResult`
        Whether the workload was created or already present.

    Raises
    ------
    previewenvoperator.exceptions.AddonBootstrapError
        Raised for any cluster API failure other than "already exists".
    """
    if logger is None:
        logger = structlog.getLogger(__name__)

    try:
        get_deployment(
            name=descriptor.name, namespace=namespace, k8s_client=k8s_client
        )
    except ApiException as e:
        if not is_not_found(e):
            raise AddonBootstrapError(
                descriptor.name, f"lookup failed ({e.status} {e.reason})"
            ) from e
    else:
        logger.info(f"Addon {descriptor.name} already exists")
        return EnsureResult.ALREADY_PRESENT

    body = create_addon_deployment(addon=descriptor, namespace=namespace)
    try:
        create_resource(body=body, namespace=namespace, k8s_client=k8s_client)
    except ResourceExistsError:
        # Created by someone else between the lookup and the create.
        logger.info(f"Addon {descriptor.name} already exists")
        return EnsureResult.ALREADY_PRESENT
    except ApiException as e:
        raise AddonBootstrapError(
            descriptor.name, f"create failed ({e.status} {e.reason})"
        ) from e

    logger.info(
        f"Created addon {descriptor.name} ({descriptor.image_ref})"
    )
    return EnsureResult.CREATED


def bootstrap_addons(
    config: Config, *, k8s_client: Any, logger: Any | None = None
) -> dict[AddonKind, EnsureResult]:
    """Reconcile every configured addon, in declaration order.

    Later addons may assume earlier ones exist, so the first failure stops
    the bootstrap.

    Returns
    -------
    results : `dict`
        The outcome for each addon kind.
    """
    if logger is None:
        logger = structlog.getLogger(__name__)

    results: dict[AddonKind, EnsureResult] = {}
    for descriptor in config.addons:
        logger.info(f"Installing addon: {descriptor.name}")
        results[descriptor.kind] = ensure_addon(
            descriptor,
            namespace=config.namespace,
            k8s_client=k8s_client,
            logger=logger,
        )
    return results
