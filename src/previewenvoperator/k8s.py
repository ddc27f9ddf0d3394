"""Helpers for interacting with Kubernetes APIs."""

__all__ = (
    "create_k8sclient",
    "create_resource",
    "delete_resource",
    "get_deployment",
    "get_persistent_volume_claim",
    "get_secret",
    "get_service",
    "is_not_found",
)

import json
from typing import Any

import kubernetes
from kubernetes.client.exceptions import ApiException

from .exceptions import ResourceExistsError


def create_k8sclient() -> kubernetes.client:
    """Get a Kubernetes client configured with available cluster
    authentication.

    If in-cluster authentication is available, that is used. Otherwise
    this function falls-back to using a kubectl config file, which is
    appropriate for development.
    """
    try:
        kubernetes.config.load_incluster_config()
    except Exception:
        kubernetes.config.load_kube_config()
    kubernetes.client.configuration.assert_hostname = False
    return kubernetes.client


def is_not_found(exc: BaseException) -> bool:
    """Return `True` if the exception is a Kubernetes 404 response."""
    return isinstance(exc, ApiException) and exc.status == 404


def get_deployment(
    *,
    name: str,
    namespace: str,
    k8s_client: Any,
) -> dict[str, Any]:
    """Get a Deployment resource as a raw manifest.

    Parameters
    ----------
    name : `str`
        The name of the Deployment.
    namespace : `str`
        The Kubernetes namespace of the Deployment.
    k8s_client
        A Kubernetes client (see `create_k8sclient`).

    Raises
    ------
    kubernetes.client.exceptions.ApiException
        Raised with status 404 if the Deployment does not exist.
    """
    result = k8s_client.AppsV1Api().read_namespaced_deployment(
        name=name, namespace=namespace, _preload_content=False
    )
    return json.loads(result.data)


def get_service(
    *,
    name: str,
    namespace: str,
    k8s_client: Any,
) -> dict[str, Any]:
    """Get a Service resource as a raw manifest."""
    result = k8s_client.CoreV1Api().read_namespaced_service(
        name=name, namespace=namespace, _preload_content=False
    )
    return json.loads(result.data)


def get_secret(
    *,
    name: str,
    namespace: str,
    k8s_client: Any,
) -> dict[str, Any]:
    """Get a Secret resource as a raw manifest."""
    result = k8s_client.CoreV1Api().read_namespaced_secret(
        name=name, namespace=namespace, _preload_content=False
    )
    return json.loads(result.data)


def get_persistent_volume_claim(
    *,
    name: str,
    namespace: str,
    k8s_client: Any,
) -> dict[str, Any]:
    """Get a PersistentVolumeClaim resource as a raw manifest."""
    result = k8s_client.CoreV1Api().read_namespaced_persistent_volume_claim(
        name=name, namespace=namespace, _preload_content=False
    )
    return json.loads(result.data)


def _api_method(kind: str, verb: str, k8s_client: Any) -> Any:
    if kind == "Deployment":
        api = k8s_client.AppsV1Api()
        noun = "deployment"
    elif kind == "Service":
        api = k8s_client.CoreV1Api()
        noun = "service"
    elif kind == "Secret":
        api = k8s_client.CoreV1Api()
        noun = "secret"
    elif kind == "PersistentVolumeClaim":
        api = k8s_client.CoreV1Api()
        noun = "persistent_volume_claim"
    else:
        raise ValueError(f"Unsupported resource kind {kind}")
    return getattr(api, f"{verb}_namespaced_{noun}")


def create_resource(
    *,
    body: dict[str, Any],
    namespace: str,
    k8s_client: Any,
) -> None:
    """Create a namespaced resource from its manifest.

    Parameters
    ----------
    body : `dict`
        The resource manifest. Its ``kind`` selects the API call.
    namespace : `str`
        The Kubernetes namespace to create the resource in.
    k8s_client
        A Kubernetes client (see `create_k8sclient`).

    Raises
    ------
    previewenvoperator.exceptions.ResourceExistsError
        Raised if a resource of this kind and name already exists. The
        cluster rejects the duplicate atomically, so this is the
        authoritative signal that someone else created it first.
    kubernetes.client.exceptions.ApiException
        Raised for any other API failure.
    """
    create = _api_method(body["kind"], "create", k8s_client)
    try:
        create(namespace=namespace, body=body)
    except ApiException as e:
        if e.status == 409:
            raise ResourceExistsError(
                body["kind"], namespace, body["metadata"]["name"]
            ) from e
        raise


def delete_resource(
    *,
    kind: str,
    name: str,
    namespace: str,
    k8s_client: Any,
) -> bool:
    """Delete a namespaced resource.

    Returns
    -------
    deleted : `bool`
        `True` if the resource was deleted, `False` if it did not exist.

    Raises
    ------
    kubernetes.client.exceptions.ApiException
        Raised for any API failure other than a 404.
    """
    delete = _api_method(kind, "delete", k8s_client)
    try:
        delete(
            name=name, namespace=namespace, propagation_policy="Background"
        )
    except ApiException as e:
        if e.status == 404:
            return False
        raise
    return True
