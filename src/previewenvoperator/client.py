"""A client for the operator's gRPC surface."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import grpc

from .rpc import SERVICE_NAME, decode_message, encode_message
from .version import get_user_agent

__all__ = ("EnvironmentsClient",)


class EnvironmentsClient:
    """Calls ``Build``, ``Status`` and ``Destroy`` on a remote operator.

    Parameters
    ----------
    target : `str`
        The ``host:port`` of the operator.
    token : `str`
        Token to authenticate with.
    root_certificates : `bytes`, optional
        PEM root certificates to trust. Defaults to the system roots.
    insecure : `bool`
        Connect without TLS. Only for tests.
    timeout : `float`
        Per-call timeout in seconds.
    """

    def __init__(
        self,
        target: str,
        *,
        token: str,
        root_certificates: bytes | None = None,
        insecure: bool = False,
        timeout: float = 300.0,
    ) -> None:
        options = [("grpc.primary_user_agent", get_user_agent())]
        if insecure:
            self._channel = grpc.insecure_channel(target, options=options)
        else:
            self._channel = grpc.secure_channel(
                target,
                grpc.ssl_channel_credentials(root_certificates),
                options=options,
            )
        self._metadata = (("authorization", f"Bearer {token}"),)
        self._timeout = timeout
        self._methods = {
            method: self._channel.unary_unary(
                f"/{SERVICE_NAME}/{method}",
                request_serializer=encode_message,
                response_deserializer=decode_message,
            )
            for method in ("Build", "Status", "Destroy")
        }

    def __enter__(self) -> EnvironmentsClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._channel.close()

    def _call(self, method: str, message: Mapping[str, Any]) -> Any:
        return self._methods[method](
            message, metadata=self._metadata, timeout=self._timeout
        )

    def build(
        self,
        name: str,
        image: str,
        *,
        ttl: str = "",
        registry_credential: Mapping[str, str] | None = None,
        ingress: bool = False,
        domains: list[str] | None = None,
        ssh: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        """Request an environment and return its status."""
        message: dict[str, Any] = {
            "name": name,
            "image": image,
            "ttl": ttl,
            "ingress": ingress,
            "domains": list(domains or []),
            "ssh": ssh,
            "env": dict(env or {}),
        }
        if registry_credential:
            message["registryCredential"] = dict(registry_credential)
        return self._call("Build", message)

    def status(self, name: str) -> dict[str, Any]:
        return self._call("Status", {"name": name})

    def destroy(self, name: str) -> dict[str, Any]:
        return self._call("Destroy", {"name": name})
