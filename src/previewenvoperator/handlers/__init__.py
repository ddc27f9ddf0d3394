"""Kopf handlers for the preview-env-operator."""

__all__ = (
    "handle_deployment_event",
    "start_operator",
    "stop_operator",
)

from previewenvoperator.handlers.deploymentwatcher import (
    handle_deployment_event,
)
from previewenvoperator.handlers.lifecycle import start_operator, stop_operator
