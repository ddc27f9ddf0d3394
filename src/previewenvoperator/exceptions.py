"""Exceptions raised by the preview environment operator."""

__all__ = (
    "AddonBootstrapError",
    "BuildError",
    "ConfigurationError",
    "CredentialError",
    "InvalidTransitionError",
    "PreviewEnvError",
    "ResourceExistsError",
)


class PreviewEnvError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(PreviewEnvError):
    """Startup configuration is missing or invalid."""


class AddonBootstrapError(PreviewEnvError):
    """A cluster addon could not be reconciled at startup."""

    def __init__(self, addon: str, message: str) -> None:
        super().__init__(f"Addon {addon}: {message}")
        self.addon = addon


class CredentialError(PreviewEnvError):
    """Transport credentials could not be obtained or renewed."""


class BuildError(PreviewEnvError):
    """A resource could not be created while provisioning an environment."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


class ResourceExistsError(PreviewEnvError):
    """The cluster resource store already holds a resource with this name."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} already exists")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class InvalidTransitionError(PreviewEnvError):
    """An environment was asked to move to a state it cannot reach."""
