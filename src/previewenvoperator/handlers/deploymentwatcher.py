"""Kopf handler that notices environment workloads deleted behind the
operator's back, usually by the garbage-collector addon.
"""

__all__ = ("handle_deployment_event",)

from typing import Any

import kopf

from ..deployments import COMPONENT_LABEL, MANAGED_BY


@kopf.on.event(
    "apps",
    "v1",
    "deployments",
    labels={
        "app.kubernetes.io/managed-by": MANAGED_BY,
        COMPONENT_LABEL: "environment",
    },
)  # type: ignore[arg-type]
def handle_deployment_event(
    *,
    name: str,
    namespace: str,
    event: dict[str, Any],
    memo: kopf.Memo,
    logger: Any,
    **kwargs: Any,
) -> None:
    """Forget an environment once its workload is deleted.

    Parameters
    ----------
    name : `str`
        The name of the Deployment, which is the environment name.
    namespace : `str`
        The Kubernetes namespace of the Deployment.
    event : `dict`
        The watch event. Only ``DELETED`` events are acted on.
    memo : `kopf.Memo`
        Operator-wide memo holding the running service.
    logger : `Any`
        The kopf logger.
    kwargs : `Any`
        Additional keyword arguments provided by kopf.
    """
    if event["type"] != "DELETED":
        return

    service = memo.get("service")
    if service is None or namespace != service.orchestrator.namespace:
        return

    if service.orchestrator.forget(name):
        logger.info(f"Environment {name} was deleted outside the operator")
