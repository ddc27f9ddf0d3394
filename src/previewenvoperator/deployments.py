"""Utilities for creating deployments and related resources."""

from __future__ import annotations

import base64
import json
from collections.abc import Mapping
from typing import Any

from .config import AddonDescriptor, AddonKind, RegistryCredential
from .expiry import EXPIRY_SELECTOR, ExpiryMetadata

__all__ = (
    "CACHE_MOUNT_PATH",
    "COMPONENT_LABEL",
    "INGRESS_PORT_ANNOTATION",
    "MANAGED_BY",
    "SSH_PORT_ANNOTATION",
    "create_addon_deployment",
    "create_cache_claim",
    "create_environment_deployment",
    "create_environment_service",
    "create_registry_secret",
    "registry_secret_name",
)

MANAGED_BY = "preview-env-operator"
"""Value of the ``app.kubernetes.io/managed-by`` label on every resource."""

COMPONENT_LABEL = "app.kubernetes.io/component"

KEY_PREFIX = "previewenv.io"

INGRESS_PORT_ANNOTATION = f"{KEY_PREFIX}/ingress-port"
INGRESS_DOMAINS_ANNOTATION = f"{KEY_PREFIX}/ingress-domains"
SSH_PORT_ANNOTATION = f"{KEY_PREFIX}/ssh-port"

CACHE_MOUNT_PATH = "/cache"
"""Where every environment mounts the shared cache claim."""

HTTP_PORT = 80
SSH_CONTAINER_PORT = 22


def _standard_labels(
    name: str, component: str, version: str | None = None
) -> dict[str, str]:
    labels = {
        "app": name,
        "app.kubernetes.io/instance": name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
        "app.kubernetes.io/name": name,
        COMPONENT_LABEL: component,
    }
    if version:
        labels["app.kubernetes.io/version"] = version
    return labels


def create_addon_deployment(
    *, addon: AddonDescriptor, namespace: str
) -> dict[str, Any]:
    """Create a Deployment resource for a cluster addon.

    Parameters
    ----------
    addon : `previewenvoperator.config.AddonDescriptor`
        The addon to deploy. If it exposes a port, the port is bound on the
        node (``hostPort``) so that callers can reach it from outside the
        cluster.
    namespace : `str`
        The namespace the addon serves.

    Returns
    -------
    deployment : `dict`
        The Deployment resource.
    """
    env = [{"name": "NAMESPACE", "value": namespace}]
    container: dict[str, Any] = {
        "name": addon.kind.value,
        "image": addon.image_ref,
        "imagePullPolicy": "IfNotPresent",
        "env": env,
    }

    if addon.kind is AddonKind.INGRESS:
        container["args"] = [
            "--kubernetes",
            f"--kubernetes.namespaces={namespace}",
        ]
        container["ports"] = [
            {
                "name": "http",
                "containerPort": HTTP_PORT,
                "hostPort": addon.exposed_port,
                "protocol": "TCP",
            }
        ]
    elif addon.kind is AddonKind.REMOTE_SHELL_GATEWAY:
        container["ports"] = [
            {
                "name": "ssh",
                "containerPort": SSH_CONTAINER_PORT,
                "hostPort": addon.exposed_port,
                "protocol": "TCP",
            }
        ]
    else:
        # The sweeper lists workloads carrying expiry labels and deletes
        # the expired ones.
        env.append({"name": "SELECTOR", "value": EXPIRY_SELECTOR})

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": addon.name,
            "labels": _standard_labels(addon.name, "addon", addon.version),
        },
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app": addon.name}},
            "template": {
                "metadata": {"labels": {"app": addon.name}},
                "spec": {"containers": [container]},
            },
        },
    }


def registry_secret_name(name: str) -> str:
    """Name of the image pull secret belonging to an environment."""
    return f"{name}-dockercfg"


def create_registry_secret(
    *, name: str, credential: RegistryCredential, expiry: ExpiryMetadata
) -> dict[str, Any]:
    """Create a ``kubernetes.io/dockerconfigjson`` Secret for pulling the
    environment's image.
    """
    auth = credential.auth
    if not auth and credential.username:
        auth = b64(f"{credential.username}:{credential.password}")
    config = {
        "auths": {
            credential.registry: {
                "username": credential.username,
                "password": credential.password,
                "email": credential.email,
                "auth": auth,
            }
        }
    }
    labels = _standard_labels(expiry.owner, "environment")
    labels.update(expiry.to_labels())
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "kubernetes.io/dockerconfigjson",
        "metadata": {"name": name, "labels": labels},
        "data": {".dockerconfigjson": b64(json.dumps(config))},
    }


def create_environment_deployment(
    *,
    name: str,
    image: str,
    expiry: ExpiryMetadata,
    cache_claim: str,
    pull_secret: str | None = None,
    env: Mapping[str, str] | None = None,
    ssh: bool = False,
    metrics_port: int | None = None,
) -> dict[str, Any]:
    """Create the primary Deployment resource for an environment.

    Parameters
    ----------
    name : `str`
        Name of the environment, which is also the name of the Deployment.
    image : `str`
        The full image reference (``repository:tag``) to run.
    expiry : `previewenvoperator.expiry.ExpiryMetadata`
        Expiry metadata. It is stamped on the Deployment's labels, where the
        garbage-collector addon reads it.
    cache_claim : `str`
        Name of the shared cache PersistentVolumeClaim, mounted read-write at
        `CACHE_MOUNT_PATH`.
    pull_secret : `str`, optional
        Name of the image pull Secret.
    env : `dict`, optional
        Extra environment variables for the container.
    ssh : `bool`
        Whether the container exposes an SSH port for the remote-shell
        gateway.
    metrics_port : `int`, optional
        Port of the Apache exporter inside the pod. `None` omits the
        Prometheus scrape annotations.

    Returns
    -------
    deployment : `dict`
        The Deployment resource.
    """
    labels = _standard_labels(name, "environment")
    labels.update(expiry.to_labels())

    container_env = [
        {"name": "PREVIEWENV_NAME", "value": name},
        {"name": "CACHE_DIR", "value": f"{CACHE_MOUNT_PATH}/shared"},
        {"name": "CACHE_PRIVATE_DIR", "value": f"{CACHE_MOUNT_PATH}/{name}"},
    ]
    for key, value in sorted((env or {}).items()):
        container_env.append({"name": key, "value": str(value)})

    ports = [{"name": "http", "containerPort": HTTP_PORT, "protocol": "TCP"}]
    if ssh:
        ports.append(
            {
                "name": "ssh",
                "containerPort": SSH_CONTAINER_PORT,
                "protocol": "TCP",
            }
        )

    container = {
        "name": "app",
        "image": image,
        "imagePullPolicy": "Always",
        "ports": ports,
        "env": container_env,
        "volumeMounts": [{"name": "cache", "mountPath": CACHE_MOUNT_PATH}],
    }

    template_annotations: dict[str, str] = {}
    if metrics_port is not None:
        template_annotations = {
            "prometheus.io/scrape": "true",
            "prometheus.io/port": str(metrics_port),
        }

    pod_spec: dict[str, Any] = {
        "containers": [container],
        "volumes": [
            {
                "name": "cache",
                "persistentVolumeClaim": {"claimName": cache_claim},
            }
        ],
    }
    if pull_secret:
        pod_spec["imagePullSecrets"] = [{"name": pull_secret}]

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "labels": labels,
            "annotations": expiry.to_annotations(),
        },
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {
                    "labels": {"app": name},
                    "annotations": template_annotations,
                },
                "spec": pod_spec,
            },
        },
    }


def create_environment_service(
    *,
    name: str,
    expiry: ExpiryMetadata,
    ingress_port: int | None = None,
    domains: list[str] | None = None,
    ssh_port: int | None = None,
) -> dict[str, Any]:
    """Create the Service resource routing traffic to an environment.

    Parameters
    ----------
    name : `str`
        Name of the environment, which is also the name of the Service.
    expiry : `previewenvoperator.expiry.ExpiryMetadata`
        Expiry metadata, stamped on the Service's labels.
    ingress_port : `int`, optional
        Listening port of the ingress addon. When set the Service is
        annotated for the ingress addon to route ``domains`` to it.
    domains : `list` of `str`, optional
        Host names the ingress addon routes to this environment.
    ssh_port : `int`, optional
        Listening port of the remote-shell gateway addon. When set the
        Service also exposes the environment's SSH port.

    Returns
    -------
    service : `dict`
        The Service resource.
    """
    labels = _standard_labels(name, "environment")
    labels.update(expiry.to_labels())
    annotations: dict[str, str] = {}
    ports = [{"name": "http", "port": HTTP_PORT, "targetPort": "http"}]
    if ingress_port is not None:
        annotations[INGRESS_PORT_ANNOTATION] = str(ingress_port)
        if domains:
            annotations[INGRESS_DOMAINS_ANNOTATION] = ",".join(domains)
    if ssh_port is not None:
        annotations[SSH_PORT_ANNOTATION] = str(ssh_port)
        ports.append(
            {"name": "ssh", "port": SSH_CONTAINER_PORT, "targetPort": "ssh"}
        )

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "labels": labels,
            "annotations": annotations,
        },
        "spec": {
            "type": "ClusterIP",
            "ports": ports,
            "selector": {"app": name},
        },
    }


def create_cache_claim(
    *, name: str, size: str, storage_class: str
) -> dict[str, Any]:
    """Create the shared cache PersistentVolumeClaim.

    The claim uses a ``cache`` storage class so that cluster administrators
    can back it with any ReadWriteMany-capable storage.
    """
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": name,
            "labels": _standard_labels(name, "cache"),
            "annotations": {
                "volume.beta.kubernetes.io/storage-class": storage_class,
            },
        },
        "spec": {
            "accessModes": ["ReadWriteMany"],
            "storageClassName": storage_class,
            "resources": {"requests": {"storage": size}},
        },
    }


def b64(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("utf-8")
