"""Version of the installed distribution and the user agent built from it."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ("DISTRIBUTION", "get_user_agent", "get_version")

DISTRIBUTION = "preview-env-operator"


def get_version() -> str:
    """Return the installed version, or ``0.0.0`` in an uninstalled source
    tree.
    """
    try:
        return version(DISTRIBUTION)
    except PackageNotFoundError:
        return "0.0.0"


def get_user_agent() -> str:
    """User agent sent to the ACME directory and by `EnvironmentsClient`."""
    return f"{DISTRIBUTION}/{get_version()}"
