"""Environment records and their lifecycle state machine."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .exceptions import InvalidTransitionError

__all__ = (
    "DestroyResult",
    "Environment",
    "EnvironmentRegistry",
    "EnvironmentState",
    "EnvironmentStatus",
    "Identity",
)


class EnvironmentState(enum.Enum):
    """Lifecycle states of an environment."""

    REQUESTED = "Requested"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    FAILED = "Failed"
    DESTROYING = "Destroying"
    DESTROYED = "Destroyed"
    NOT_FOUND = "NotFound"
    """Reported by status lookups; no environment is ever in this state."""

    @property
    def is_terminal(self) -> bool:
        return self is EnvironmentState.DESTROYED

    @property
    def is_settled(self) -> bool:
        """`True` once provisioning has finished, successfully or not."""
        return self in (EnvironmentState.READY, EnvironmentState.FAILED)


_TRANSITIONS: dict[EnvironmentState, frozenset[EnvironmentState]] = {
    EnvironmentState.REQUESTED: frozenset({EnvironmentState.PROVISIONING}),
    EnvironmentState.PROVISIONING: frozenset(
        {EnvironmentState.READY, EnvironmentState.FAILED}
    ),
    EnvironmentState.READY: frozenset({EnvironmentState.DESTROYING}),
    EnvironmentState.FAILED: frozenset({EnvironmentState.DESTROYING}),
    EnvironmentState.DESTROYING: frozenset({EnvironmentState.DESTROYED}),
    EnvironmentState.DESTROYED: frozenset(),
    EnvironmentState.NOT_FOUND: frozenset(),
}


class DestroyResult(enum.Enum):
    """Outcome of a destroy request."""

    DESTROYED = "Destroyed"
    NOT_FOUND = "NotFound"


@dataclass(frozen=True)
class Identity:
    """Identifies an environment: unique by name within a namespace."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class EnvironmentStatus:
    """A point-in-time view of an environment, returned to callers."""

    identity: Identity
    state: EnvironmentState
    message: str = ""
    image: str = ""
    ttl: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.identity.namespace,
            "name": self.identity.name,
            "state": self.state.value,
            "message": self.message,
            "image": self.image,
            "ttl": self.ttl,
            "createdAt": (
                self.created_at.isoformat() if self.created_at else ""
            ),
        }


@dataclass
class Environment:
    """The operator's record of an environment it is provisioning or has
    provisioned.

    The cluster owns the underlying resources; the garbage collector may
    delete them at any time without going through this record.
    """

    identity: Identity
    image: str
    ttl: str
    requested_at: datetime
    created_at: datetime | None = None
    state: EnvironmentState = EnvironmentState.REQUESTED
    message: str = ""
    settled: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False
    )

    def transition(
        self, state: EnvironmentState, message: str = ""
    ) -> None:
        """Move to ``state``.

        Raises
        ------
        previewenvoperator.exceptions.InvalidTransitionError
            Raised if ``state`` is not reachable from the current state.
        """
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.identity}: {self.state.value} -> {state.value}"
            )
        self.state = state
        self.message = message
        if state.is_settled:
            self.settled.set()

    def status(self) -> EnvironmentStatus:
        return EnvironmentStatus(
            identity=self.identity,
            state=self.state,
            message=self.message,
            image=self.image,
            ttl=self.ttl,
            created_at=self.created_at,
        )


class EnvironmentRegistry:
    """Thread-safe map of identities to their environment records."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._environments: dict[Identity, Environment] = {}

    def get(self, identity: Identity) -> Environment | None:
        with self._lock:
            return self._environments.get(identity)

    def put(self, environment: Environment) -> None:
        with self._lock:
            self._environments[environment.identity] = environment

    def discard(self, identity: Identity) -> Environment | None:
        with self._lock:
            return self._environments.pop(identity, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._environments)
