"""Provision the build cache volume shared by every environment."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from kubernetes.client.exceptions import ApiException

from .deployments import create_cache_claim
from .exceptions import ResourceExistsError
from .k8s import create_resource, get_persistent_volume_claim, is_not_found

__all__ = ("VolumeRef", "ensure_cache_volume")


@dataclass(frozen=True)
class VolumeRef:
    """Reference to the shared cache claim."""

    namespace: str
    name: str
    size: str
    created: bool = False


def ensure_cache_volume(
    *,
    namespace: str,
    size: str,
    k8s_client: Any,
    name: str = "cache",
    storage_class: str = "cache",
    logger: Any | None = None,
) -> VolumeRef:
    """Create the shared ReadWriteMany cache claim if it is absent.

    The claim is never resized or deleted by the operator. If an existing
    claim requests a different size, a warning is logged and the existing
    claim is used as is.

    Parameters
    ----------
    namespace : `str`
        The Kubernetes namespace environments are built in.
    size : `str`
        Storage request for the claim, as a Kubernetes quantity.
    k8s_client
        A Kubernetes client (see `previewenvoperator.k8s.create_k8sclient`).
    name : `str`
        Name of the claim.
    storage_class : `str`
        Storage class backing the claim.
    logger
        Logger to use. Defaults to a structlog logger for this module.

    Returns
    -------
    ref : `VolumeRef`
        A reference to mount in environment workloads.

    Raises
    ------
    kubernetes.client.exceptions.ApiException
        Raised for any API failure other than "not found" on lookup or
        "already exists" on create.
    """
    if logger is None:
        logger = structlog.getLogger(__name__)

    try:
        claim = get_persistent_volume_claim(
            name=name, namespace=namespace, k8s_client=k8s_client
        )
    except ApiException as e:
        if not is_not_found(e):
            raise
    else:
        existing = (
            claim.get("spec", {})
            .get("resources", {})
            .get("requests", {})
            .get("storage")
        )
        if existing != size:
            logger.warning(
                f"Cache claim {name} requests {existing}, not {size}; "
                "leaving it unchanged"
            )
        else:
            logger.info(f"Cache claim {name} already exists")
        return VolumeRef(namespace=namespace, name=name, size=existing or size)

    body = create_cache_claim(
        name=name, size=size, storage_class=storage_class
    )
    try:
        create_resource(body=body, namespace=namespace, k8s_client=k8s_client)
    except ResourceExistsError:
        logger.info(f"Cache claim {name} already exists")
        return VolumeRef(namespace=namespace, name=name, size=size)

    logger.info(f"Created cache claim {name} ({size})")
    return VolumeRef(namespace=namespace, name=name, size=size, created=True)
