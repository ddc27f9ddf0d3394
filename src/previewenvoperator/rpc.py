"""The gRPC surface of the operator.

Messages are JSON objects rather than protobufs, so the service is
registered through generic handlers and needs no generated code. Every call
must carry an ``authorization: Bearer <token>`` metadata entry.
"""

from __future__ import annotations

import hmac
import json
from collections.abc import Callable, Mapping
from concurrent import futures
from typing import Any

import grpc
import structlog
from kubernetes.client.exceptions import ApiException

from .config import RegistryCredential
from .orchestrator import BuildOrchestrator, BuildRequest

__all__ = (
    "MALFORMED",
    "SERVICE_NAME",
    "EnvironmentsServicer",
    "create_server",
    "decode_message",
    "encode_message",
    "parse_build_request",
)

SERVICE_NAME = "previewenv.v1.Environments"


def encode_message(message: Mapping[str, Any]) -> bytes:
    return json.dumps(message, sort_keys=True).encode("utf-8")


MALFORMED = object()
"""Decoded form of a body that is not JSON. gRPC fails a call whose
deserializer returns `None`, so `decode_message` never does.
"""


def decode_message(data: bytes) -> Any:
    """Decode a JSON message. Bodies that are not JSON, or are JSON
    ``null``, decode to `MALFORMED` so that the servicer can reject them as
    an invalid argument.
    """
    try:
        message = json.loads(data.decode("utf-8") or "{}")
    except ValueError:
        return MALFORMED
    return MALFORMED if message is None else message


def parse_build_request(message: Mapping[str, Any]) -> BuildRequest:
    """Convert a ``Build`` message into a `BuildRequest`.

    Raises
    ------
    ValueError
        Raised if a field has the wrong type.
    """
    name = message.get("name")
    image = message.get("image")
    if not isinstance(name, str) or not name:
        raise ValueError("name is required")
    if not isinstance(image, str) or not image:
        raise ValueError("image is required")

    ttl = message.get("ttl") or ""
    if not isinstance(ttl, str):
        raise ValueError("ttl must be a string such as 24h")

    credential = message.get("registryCredential")
    if credential is not None and not isinstance(credential, dict):
        raise ValueError("registryCredential must be an object")

    domains = message.get("domains") or []
    if not isinstance(domains, list) or not all(
        isinstance(domain, str) for domain in domains
    ):
        raise ValueError("domains must be a list of strings")

    env = message.get("env") or {}
    if not isinstance(env, dict) or not all(
        isinstance(key, str) and isinstance(value, str)
        for key, value in env.items()
    ):
        raise ValueError("env must map strings to strings")

    return BuildRequest(
        name=name,
        image=image,
        ttl=ttl,
        registry_credential=RegistryCredential.from_mapping(credential),
        ingress=bool(message.get("ingress", False)),
        domains=tuple(domains),
        ssh=bool(message.get("ssh", False)),
        env=env,
    )


class EnvironmentsServicer:
    """Implements ``Build``, ``Status`` and ``Destroy``.

    Parameters
    ----------
    orchestrator : `previewenvoperator.orchestrator.BuildOrchestrator`
        Performs the work.
    token : `str`
        The token callers must present.
    logger
        Logger to use. Defaults to a structlog logger for this module.
    """

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        *,
        token: str,
        logger: Any | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._expected = f"Bearer {token}".encode("utf-8")
        self._logger = logger or structlog.getLogger(__name__)

    def Build(self, request: Any, context: grpc.ServicerContext) -> Any:
        def build(message: Mapping[str, Any]) -> dict[str, Any]:
            status = self._orchestrator.build(parse_build_request(message))
            return status.to_dict()

        return self._handle("Build", request, context, build)

    def Status(self, request: Any, context: grpc.ServicerContext) -> Any:
        def status(message: Mapping[str, Any]) -> dict[str, Any]:
            return self._orchestrator.status(_name(message)).to_dict()

        return self._handle("Status", request, context, status)

    def Destroy(self, request: Any, context: grpc.ServicerContext) -> Any:
        def destroy(message: Mapping[str, Any]) -> dict[str, Any]:
            name = _name(message)
            result = self._orchestrator.destroy(name)
            return {
                "namespace": self._orchestrator.namespace,
                "name": name,
                "result": result.value,
            }

        return self._handle("Destroy", request, context, destroy)

    def _authenticate(self, context: grpc.ServicerContext) -> None:
        metadata = dict(context.invocation_metadata())
        presented = str(metadata.get("authorization", "")).encode("utf-8")
        if not hmac.compare_digest(presented, self._expected):
            context.abort(
                grpc.StatusCode.UNAUTHENTICATED, "Invalid or missing token"
            )

    def _handle(
        self,
        method: str,
        request: Any,
        context: grpc.ServicerContext,
        func: Callable[[Mapping[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]:
        self._authenticate(context)
        if not isinstance(request, dict):
            context.abort(
                grpc.StatusCode.INVALID_ARGUMENT,
                "Request must be a JSON object",
            )
        try:
            return func(request)
        except ValueError as e:
            context.abort(grpc.StatusCode.INVALID_ARGUMENT, str(e))
        except ApiException as e:
            self._logger.exception(f"{method} failed talking to Kubernetes")
            context.abort(
                grpc.StatusCode.UNAVAILABLE,
                f"Kubernetes API error ({e.status} {e.reason})",
            )
        except Exception:
            self._logger.exception(f"{method} failed")
            context.abort(grpc.StatusCode.INTERNAL, "Internal error")
        raise AssertionError("unreachable")


def _name(message: Mapping[str, Any]) -> str:
    name = message.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("name is required")
    return name


def _method_handler(method: Callable[..., Any]) -> grpc.RpcMethodHandler:
    return grpc.unary_unary_rpc_method_handler(
        method,
        request_deserializer=decode_message,
        response_serializer=encode_message,
    )


def create_server(
    servicer: EnvironmentsServicer,
    *,
    port: int,
    credentials: grpc.ServerCredentials | None,
    workers: int = 10,
    host: str = "[::]",
) -> tuple[grpc.Server, int]:
    """Create (but do not start) a gRPC server for ``servicer``.

    Parameters
    ----------
    servicer : `EnvironmentsServicer`
        The service implementation.
    port : `int`
        Port to listen on. ``0`` picks a free port.
    credentials : `grpc.ServerCredentials` or `None`
        TLS credentials. `None` listens in plaintext, which is only
        suitable for tests.
    workers : `int`
        Number of requests served concurrently.
    host : `str`
        Address to bind.

    Returns
    -------
    server : `grpc.Server`
        The server.
    port : `int`
        The port actually bound.
    """
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=workers))
    handler = grpc.method_handlers_generic_handler(
        SERVICE_NAME,
        {
            "Build": _method_handler(servicer.Build),
            "Status": _method_handler(servicer.Status),
            "Destroy": _method_handler(servicer.Destroy),
        },
    )
    server.add_generic_rpc_handlers((handler,))
    address = f"{host}:{port}"
    if credentials is None:
        bound = server.add_insecure_port(address)
    else:
        bound = server.add_secure_port(address, credentials)
    return server, bound
