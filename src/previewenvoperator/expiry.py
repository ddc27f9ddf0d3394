"""The expiry metadata stamped on every environment workload.

The garbage-collector addon lists workloads matching `EXPIRY_SELECTOR`, reads
these labels back and deletes every workload where
``now - createdAt > ttl``. It trusts the labels unconditionally, so a missing
or unparseable value is an environment that never expires.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

__all__ = (
    "CREATED_AT_LABEL",
    "EXPIRY_SELECTOR",
    "OWNER_LABEL",
    "TTL_LABEL",
    "ExpiryMetadata",
    "parse_ttl",
)

CREATED_AT_LABEL = "createdAt"
"""Label holding the creation time in whole seconds since the epoch."""

TTL_LABEL = "ttl"
"""Label holding the TTL exactly as the caller requested it (``24h``)."""

OWNER_LABEL = "owner"
"""Label holding the environment name that owns the workload."""

EXPIRY_SELECTOR = f"{CREATED_AT_LABEL},{TTL_LABEL}"
"""Label selector matching every workload that carries expiry metadata."""

_TTL_PATTERN = re.compile(r"^(?:\d+[dhms])+$")
_TTL_PART = re.compile(r"(\d+)([dhms])")
_UNITS = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}
_MAX_TTL_LENGTH = 63


def parse_ttl(value: str) -> timedelta:
    """Parse a duration string such as ``24h``, ``90m`` or ``1h30m``.

    Parameters
    ----------
    value : `str`
        The duration. Units are ``d``, ``h``, ``m`` and ``s``; components may
        be combined but the total must be positive.

    Returns
    -------
    ttl : `datetime.timedelta`
        The parsed duration.

    Raises
    ------
    ValueError
        Raised if the string is not a valid, positive duration.
    """
    if (
        not isinstance(value, str)
        or len(value) > _MAX_TTL_LENGTH
        or not _TTL_PATTERN.match(value)
    ):
        raise ValueError(f"Invalid TTL {value!r}, expected e.g. 24h or 1h30m")
    kwargs: dict[str, int] = {}
    for amount, unit in _TTL_PART.findall(value):
        key = _UNITS[unit]
        kwargs[key] = kwargs.get(key, 0) + int(amount)
    try:
        ttl = timedelta(**kwargs)
    except OverflowError as err:
        raise ValueError(f"TTL {value!r} is too long") from err
    if ttl <= timedelta(0):
        raise ValueError(f"TTL {value!r} must be positive")
    return ttl


@dataclass(frozen=True)
class ExpiryMetadata:
    """Expiry metadata for one environment workload."""

    created_at: datetime
    ttl: str
    owner: str

    def __post_init__(self) -> None:
        # Fail at construction rather than stamp a label the sweeper
        # cannot read.
        ttl = parse_ttl(self.ttl)
        if self.created_at.tzinfo is None:
            raise ValueError("created_at must be timezone-aware")
        try:
            self.created_at + ttl
        except OverflowError as err:
            raise ValueError(f"TTL {self.ttl!r} is too long") from err

    @property
    def expires_at(self) -> datetime:
        return self.created_at + parse_ttl(self.ttl)

    def is_expired(self, now: datetime) -> bool:
        """Return `True` if the garbage collector should delete the
        workload at ``now``.
        """
        return now - self.created_at > parse_ttl(self.ttl)

    def to_labels(self) -> dict[str, str]:
        return {
            CREATED_AT_LABEL: str(int(self.created_at.timestamp())),
            TTL_LABEL: self.ttl,
            OWNER_LABEL: self.owner,
        }

    def to_annotations(self) -> dict[str, str]:
        """Human-readable copies of the labels."""
        return {
            "previewenv.io/created-at": self.created_at.isoformat(),
            "previewenv.io/expires-at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_labels(cls, labels: Mapping[str, str]) -> ExpiryMetadata:
        """Read expiry metadata back from a workload's labels.

        Raises
        ------
        ValueError
            Raised if any label is missing or malformed.
        """
        try:
            created_at = datetime.fromtimestamp(
                int(labels[CREATED_AT_LABEL]), tz=timezone.utc
            )
            return cls(
                created_at=created_at,
                ttl=labels[TTL_LABEL],
                owner=labels[OWNER_LABEL],
            )
        except KeyError as err:
            raise ValueError(f"Missing expiry label {err.args[0]}") from err
