"""Build, inspect and destroy preview environments."""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from kubernetes.client.exceptions import ApiException

from .cachevolume import VolumeRef
from .config import AddonKind, Config, RegistryCredential
from .deployments import (
    COMPONENT_LABEL,
    MANAGED_BY,
    create_environment_deployment,
    create_environment_service,
    create_registry_secret,
    registry_secret_name,
)
from .environments import (
    DestroyResult,
    Environment,
    EnvironmentRegistry,
    EnvironmentState,
    EnvironmentStatus,
    Identity,
)
from .exceptions import BuildError, ResourceExistsError
from .expiry import ExpiryMetadata
from .k8s import create_resource, delete_resource, get_deployment, is_not_found
from .metrics import BUILDS, DESTROYS

__all__ = ("BuildOrchestrator", "BuildRequest", "validate_name")

_NAME = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

FOREIGN_WORKLOAD = "Name is taken by a workload this operator does not manage"


def validate_name(name: str) -> str:
    """Check that ``name`` can name every resource of an environment and
    fit in a label value.

    Raises
    ------
    ValueError
        Raised if the name is not a DNS-1123 label.
    """
    # Leave room for the registry secret's suffix.
    if not isinstance(name, str) or len(name) > 50 or not _NAME.match(name):
        raise ValueError(
            f"Invalid environment name {name!r}: use at most 50 lowercase "
            "letters, digits and dashes"
        )
    return name


def current_datetime() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class _IdentityLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


@dataclass(frozen=True)
class BuildRequest:
    """A request to provision an environment."""

    name: str
    image: str
    ttl: str = ""
    registry_credential: RegistryCredential | None = None
    ingress: bool = False
    domains: tuple[str, ...] = ()
    ssh: bool = False
    env: Mapping[str, str] = field(default_factory=dict)


class BuildOrchestrator:
    """Provisions environments on the cluster and tracks their status.

    Builds for different identities run fully in parallel. For a single
    identity, a lock serializes the pre-flight check so that concurrent
    requests do not repeat work, but the authoritative guard against
    duplicates is the cluster itself rejecting a second workload with the
    same name.

    Parameters
    ----------
    config : `previewenvoperator.config.Config`
        The operator configuration.
    k8s_client
        A Kubernetes client (see `previewenvoperator.k8s.create_k8sclient`).
    cache_volume : `previewenvoperator.cachevolume.VolumeRef`
        The shared cache claim every environment mounts.
    clock : callable, optional
        Returns the current timezone-aware time. Used for ``createdAt``.
    logger
        Logger to use. Defaults to a structlog logger for this module.
    """

    def __init__(
        self,
        *,
        config: Config,
        k8s_client: Any,
        cache_volume: VolumeRef,
        clock: Callable[[], datetime] = current_datetime,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._k8s_client = k8s_client
        self._cache_volume = cache_volume
        self._clock = clock
        self._logger = logger or structlog.getLogger(__name__)
        self._registry = EnvironmentRegistry()
        self._locks: dict[Identity, _IdentityLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def namespace(self) -> str:
        return self._config.namespace

    def identity(self, name: str) -> Identity:
        return Identity(namespace=self.namespace, name=validate_name(name))

    @contextmanager
    def _locked(self, identity: Identity) -> Iterator[None]:
        """Hold the lock for ``identity``. The lock is dropped once no
        caller holds or waits for it.
        """
        with self._locks_guard:
            entry = self._locks.setdefault(identity, _IdentityLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[identity]

    def build(self, request: BuildRequest) -> EnvironmentStatus:
        """Provision an environment unless one is already active.

        Returns
        -------
        status : `previewenvoperator.environments.EnvironmentStatus`
            The status of the existing environment if one is active for the
            identity, otherwise the outcome of provisioning (``Ready`` or
            ``Failed``).

        Raises
        ------
        ValueError
            Raised if the request is invalid.
        kubernetes.client.exceptions.ApiException
            Raised if the pre-flight lookup of an existing workload fails.
        """
        identity = self.identity(request.name)
        if not request.image:
            raise ValueError("An image is required")
        ttl = request.ttl or self._config.default_ttl
        ExpiryMetadata(created_at=self._clock(), ttl=ttl, owner=identity.name)

        with self._locked(identity):
            environment = self._registry.get(identity)
            if environment is not None:
                self._logger.info(
                    f"Environment {identity} is already "
                    f"{environment.state.value}"
                )
                BUILDS.labels(outcome="existing").inc()
                return environment.status()

            existing = self._status_from_cluster(identity)
            if existing is not None:
                self._record_existing(existing)
                BUILDS.labels(outcome="existing").inc()
                return existing

            environment = Environment(
                identity=identity,
                image=request.image,
                ttl=ttl,
                requested_at=self._clock(),
            )
            self._registry.put(environment)
            environment.transition(EnvironmentState.PROVISIONING)

        return self._provision(environment, request)

    def _provision(
        self, environment: Environment, request: BuildRequest
    ) -> EnvironmentStatus:
        identity = environment.identity
        logger = self._logger.bind(environment=str(identity))
        environment.created_at = self._clock()
        expiry = ExpiryMetadata(
            created_at=environment.created_at,
            ttl=environment.ttl,
            owner=identity.name,
        )

        try:
            pull_secret = self._create_registry_secret(
                identity, request.registry_credential, expiry
            )

            deployment = create_environment_deployment(
                name=identity.name,
                image=request.image,
                expiry=expiry,
                cache_claim=self._cache_volume.name,
                pull_secret=pull_secret,
                env=request.env,
                ssh=request.ssh,
                metrics_port=self._config.metrics_apache_port,
            )
            try:
                self._create("workload", deployment)
            except ResourceExistsError:
                # Lost the race to another replica or an earlier build
                # whose record we no longer hold.
                logger.info("Workload already exists; reporting it instead")
                self._registry.discard(identity)
                environment.transition(
                    EnvironmentState.FAILED, "Workload already exists"
                )
                existing = self._status_from_cluster(identity)
                BUILDS.labels(outcome="existing").inc()
                if existing is None:
                    return environment.status()
                self._record_existing(existing)
                return existing

            service = create_environment_service(
                name=identity.name,
                expiry=expiry,
                ingress_port=(
                    self._addon_port(AddonKind.INGRESS)
                    if request.ingress
                    else None
                ),
                domains=list(request.domains),
                ssh_port=(
                    self._addon_port(AddonKind.REMOTE_SHELL_GATEWAY)
                    if request.ssh
                    else None
                ),
            )
            try:
                self._create("route", service)
            except ResourceExistsError:
                logger.info("Route already exists; reusing it")
        except BuildError as e:
            # Resources created before the failure are left in place until
            # the environment is destroyed.
            logger.error(f"Build failed: {e}")
            environment.transition(EnvironmentState.FAILED, str(e))
            BUILDS.labels(outcome="failed").inc()
            return environment.status()
        except Exception as e:
            logger.exception("Unexpected error during build")
            if not environment.state.is_settled:
                environment.transition(EnvironmentState.FAILED, str(e))
            BUILDS.labels(outcome="failed").inc()
            raise

        environment.transition(EnvironmentState.READY)
        logger.info(f"Environment is ready (ttl {environment.ttl})")
        BUILDS.labels(outcome="ready").inc()
        return environment.status()

    def _addon_port(self, kind: AddonKind) -> int | None:
        return self._config.addon(kind).exposed_port

    def _create(self, step: str, body: dict[str, Any]) -> None:
        try:
            create_resource(
                body=body,
                namespace=self.namespace,
                k8s_client=self._k8s_client,
            )
        except ApiException as e:
            raise BuildError(
                step, f"creating {body['kind']} failed ({e.status} {e.reason})"
            ) from e

    def _create_registry_secret(
        self,
        identity: Identity,
        credential: RegistryCredential | None,
        expiry: ExpiryMetadata,
    ) -> str | None:
        credential = credential or self._config.registry_credential
        if credential is None:
            return None
        name = registry_secret_name(identity.name)
        body = create_registry_secret(
            name=name, credential=credential, expiry=expiry
        )
        try:
            self._create("registry credential", body)
        except ResourceExistsError:
            self._logger.info(f"Secret {name} already exists; reusing it")
        return name

    def _status_from_cluster(
        self, identity: Identity
    ) -> EnvironmentStatus | None:
        """Describe an environment workload found on the cluster, or return
        `None` if there is none.
        """
        try:
            deployment = get_deployment(
                name=identity.name,
                namespace=identity.namespace,
                k8s_client=self._k8s_client,
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

        metadata = deployment.get("metadata", {})
        labels = metadata.get("labels") or {}
        if (
            labels.get("app.kubernetes.io/managed-by") != MANAGED_BY
            or labels.get(COMPONENT_LABEL) != "environment"
        ):
            return EnvironmentStatus(
                identity=identity,
                state=EnvironmentState.FAILED,
                message=FOREIGN_WORKLOAD,
            )

        containers = (
            deployment.get("spec", {})
            .get("template", {})
            .get("spec", {})
            .get("containers", [])
        )
        image = containers[0].get("image", "") if containers else ""
        try:
            expiry = ExpiryMetadata.from_labels(labels)
        except ValueError as e:
            self._logger.warning(
                f"Workload {identity} has invalid expiry metadata: {e}"
            )
            return EnvironmentStatus(
                identity=identity,
                state=EnvironmentState.READY,
                message=f"Invalid expiry metadata: {e}",
                image=image,
            )
        return EnvironmentStatus(
            identity=identity,
            state=EnvironmentState.READY,
            image=image,
            ttl=expiry.ttl,
            created_at=expiry.created_at,
        )

    def _record_existing(self, status: EnvironmentStatus) -> None:
        """Record an environment whose workload already exists on the
        cluster, such as one built before the operator restarted.

        Workloads this operator does not manage are never recorded, so they
        are never destroyed.
        """
        if status.message == FOREIGN_WORKLOAD:
            return
        identity = status.identity
        environment = Environment(
            identity=identity,
            image=status.image,
            ttl=status.ttl,
            requested_at=status.created_at or self._clock(),
            created_at=status.created_at,
        )
        environment.transition(EnvironmentState.PROVISIONING)
        environment.transition(status.state, status.message)
        self._registry.put(environment)
        self._logger.info(
            f"Found existing workload for {identity} "
            f"({status.state.value})"
        )

    def status(self, name: str) -> EnvironmentStatus:
        """Look up an environment without changing anything.

        Returns
        -------
        status : `previewenvoperator.environments.EnvironmentStatus`
            The environment's status, or a status in the ``NotFound`` state.
        """
        identity = self.identity(name)
        environment = self._registry.get(identity)
        if environment is not None:
            return environment.status()
        status = self._status_from_cluster(identity)
        if status is not None:
            return status
        return EnvironmentStatus(
            identity=identity, state=EnvironmentState.NOT_FOUND
        )

    def destroy(self, name: str) -> DestroyResult:
        """Delete an environment's workload, route and registry secret.

        The shared cache claim is never touched. If the environment is still
        provisioning, this waits for provisioning to settle first.

        Returns
        -------
        result : `previewenvoperator.environments.DestroyResult`
            ``Destroyed`` if anything was deleted or the environment was
            known, ``NotFound`` otherwise.

        Raises
        ------
        kubernetes.client.exceptions.ApiException
            Raised if a delete fails for a reason other than "not found".
            The environment stays in ``Destroying`` and the call can be
            retried.
        """
        identity = self.identity(name)
        with self._locked(identity):
            environment = self._registry.get(identity)
            if environment is not None:
                environment.settled.wait()
                if environment.state is not EnvironmentState.DESTROYING:
                    environment.transition(EnvironmentState.DESTROYING)
            else:
                existing = self._status_from_cluster(identity)
                if (
                    existing is not None
                    and existing.message == FOREIGN_WORKLOAD
                ):
                    DESTROYS.labels(outcome="not_found").inc()
                    return DestroyResult.NOT_FOUND

            deleted = False
            for kind, resource_name in (
                ("Deployment", identity.name),
                ("Service", identity.name),
                ("Secret", registry_secret_name(identity.name)),
            ):
                if delete_resource(
                    kind=kind,
                    name=resource_name,
                    namespace=identity.namespace,
                    k8s_client=self._k8s_client,
                ):
                    self._logger.info(f"Deleted {kind} {resource_name}")
                    deleted = True

            if environment is None and not deleted:
                DESTROYS.labels(outcome="not_found").inc()
                return DestroyResult.NOT_FOUND

            if environment is not None:
                environment.transition(EnvironmentState.DESTROYED)
                self._registry.discard(identity)
            self._logger.info(f"Destroyed environment {identity}")
            DESTROYS.labels(outcome="destroyed").inc()
            return DestroyResult.DESTROYED

    def forget(self, name: str) -> bool:
        """Drop the record of an environment whose workload was deleted
        outside of this service, typically by the garbage collector.

        Environments that are still provisioning or being destroyed are
        kept, since their own request will settle them.

        Returns
        -------
        forgotten : `bool`
            `True` if a record was dropped.
        """
        identity = self.identity(name)
        with self._locked(identity):
            environment = self._registry.get(identity)
            if environment is None or not environment.state.is_settled:
                return False
            self._registry.discard(identity)
        self._logger.info(f"Forgot environment {identity}; workload is gone")
        return True
