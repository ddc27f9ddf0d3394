"""Kopf handlers that start and stop the operator's service."""

__all__ = ("start_operator", "stop_operator")

from typing import Any

import kopf

from ..config import Config
from ..exceptions import PreviewEnvError
from ..startup import configure_logging, start_service


@kopf.on.startup()
def start_operator(*, memo: kopf.Memo, logger: Any, **kwargs: Any) -> None:
    """Bootstrap addons and the cache claim, then start the RPC listener.

    Any failure is permanent: the operator exits without serving.

    Parameters
    ----------
    memo : `kopf.Memo`
        Operator-wide memo. The running service is stored as
        ``memo.service`` for the other handlers.
    logger : `Any`
        The kopf logger.
    kwargs : `Any`
        Additional keyword arguments provided by kopf.
    """
    try:
        config = Config.from_environ()
        configure_logging(config.log_level)
        memo.service = start_service(config, logger=logger)
    except PreviewEnvError as e:
        logger.error(f"Startup failed: {e}")
        raise kopf.PermanentError(str(e)) from e


@kopf.on.cleanup()
def stop_operator(*, memo: kopf.Memo, logger: Any, **kwargs: Any) -> None:
    """Stop the RPC listener and background credential renewal."""
    service = memo.get("service")
    if service is None:
        return
    logger.info("Stopping environments API")
    service.stop()
