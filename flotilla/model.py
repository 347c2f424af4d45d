"""Value objects shared by the differ, the lifecycle driver and the membership machine.

Everything here is immutable. Live state (power state, addresses, swarm
records) is always re-read from the provider or the control plane; these
types only carry a snapshot between two calls.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from flotilla.core.exceptions import ConfigurationError, ControlPlaneError

# =============================================================================
# Enums
# =============================================================================


class Role(StrEnum):
    MANAGER = "manager"
    WORKER = "worker"


class PowerState(StrEnum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    ABSENT = "Absent"


class Availability(StrEnum):
    ACTIVE = "active"
    PAUSE = "pause"
    DRAIN = "drain"


class Reachability(StrEnum):
    READY = "Ready"
    DOWN = "Down"
    UNKNOWN = "Unknown"


class MemberState(StrEnum):
    """Membership of one instance as seen by the membership state machine."""

    NOT_MEMBER = "NotMember"
    JOINING = "Joining"
    ACTIVE = "Active"
    DRAINING = "Draining"
    LEAVING = "Leaving"


# =============================================================================
# Naming
# =============================================================================


@dataclass(frozen=True, slots=True)
class Naming:
    """Instance naming convention: ``<prefix><index>`` with dense indexes from 0.

    The manager with index 0 is the bootstrap leader.
    """

    manager_prefix: str = "manager"
    worker_prefix: str = "worker"

    def __post_init__(self) -> None:
        if not self.manager_prefix or not self.worker_prefix:
            raise ConfigurationError("Instance name prefixes must not be empty")
        if self.manager_prefix == self.worker_prefix:
            raise ConfigurationError(
                f"Manager and worker prefixes must differ (both '{self.manager_prefix}')"
            )

    def prefix(self, role: Role) -> str:
        return self.manager_prefix if role is Role.MANAGER else self.worker_prefix

    def name(self, role: Role, index: int) -> str:
        if index < 0:
            raise ValueError(f"Instance index must be non-negative, got {index}")
        return f"{self.prefix(role)}{index}"

    @property
    def leader(self) -> str:
        return self.name(Role.MANAGER, 0)

    def pattern(self, role: Role | None = None) -> str:
        """Anchored regex matching names of ``role`` (or of either role)."""
        roles = (role,) if role else (Role.MANAGER, Role.WORKER)
        alternatives = "|".join(re.escape(self.prefix(r)) for r in roles)
        return rf"^(?:{alternatives})(?:0|[1-9][0-9]*)$"

    def parse(self, name: str) -> tuple[Role, int] | None:
        """Return ``(role, index)`` for a conforming name, None otherwise.

        The longer prefix is tried first so that e.g. ``mgr`` and ``m`` can
        coexist without ``mgr3`` being read as an ``m`` name.
        """
        candidates = sorted(Role, key=lambda r: len(self.prefix(r)), reverse=True)
        for role in candidates:
            prefix = self.prefix(role)
            if name.startswith(prefix):
                rest = name[len(prefix):]
                # only names this tool generates: no leading zeros
                if rest.isascii() and rest.isdigit() and rest == str(int(rest)):
                    return role, int(rest)
        return None

    def role_of(self, name: str) -> Role | None:
        parsed = self.parse(name)
        return parsed[0] if parsed else None

    def is_leader(self, name: str) -> bool:
        return name == self.leader


# =============================================================================
# Instances and topology
# =============================================================================


@dataclass(frozen=True, slots=True)
class Instance:
    name: str
    role: Role
    index: int
    power: PowerState = PowerState.ABSENT


@dataclass(frozen=True, slots=True)
class Topology:
    """Desired cluster shape: number of managers and workers."""

    managers: int
    workers: int

    def __post_init__(self) -> None:
        if self.managers < 0 or self.workers < 0:
            raise ValueError(
                f"Counts must be non-negative, got managers={self.managers} workers={self.workers}"
            )

    @property
    def total(self) -> int:
        return self.managers + self.workers

    def count(self, role: Role) -> int:
        return self.managers if role is Role.MANAGER else self.workers

    def wanted(self, naming: Naming, role: Role | None = None) -> frozenset[str]:
        roles = (role,) if role else (Role.MANAGER, Role.WORKER)
        return frozenset(
            naming.name(r, i) for r in roles for i in range(self.count(r))
        )

    @classmethod
    def from_args(cls, args: Sequence[int], current: Topology | None = None) -> Topology:
        """Resolve ``scale``/``start`` arguments.

        No arguments keep ``current`` (or 1 manager when the cluster is
        empty), one argument ``N`` means one manager and ``N - 1`` workers,
        two arguments are the manager and worker counts.
        """
        match list(args):
            case []:
                if current is None or current.total == 0:
                    return cls(managers=1, workers=0)
                return current
            case [total]:
                if total < 1:
                    raise ValueError(f"Node count must be at least 1, got {total}")
                return cls(managers=1, workers=total - 1)
            case [managers, workers]:
                return cls(managers=managers, workers=workers)
            case _:
                raise ValueError(f"Expected at most two counts, got {len(args)}")


@dataclass(frozen=True, slots=True)
class Diff:
    """Outcome of comparing the wanted names with the provisioned ones."""

    wanted: frozenset[str]
    actual: frozenset[str]
    missing: frozenset[str]
    extra: frozenset[str]

    @property
    def converged(self) -> bool:
        return not self.missing and not self.extra


# =============================================================================
# Control plane records
# =============================================================================


@dataclass(frozen=True, slots=True)
class NodeRecord:
    """One row of ``docker node ls``."""

    id: str
    hostname: str
    role: Role
    availability: Availability
    state: Reachability
    leader: bool = False

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> NodeRecord:
        try:
            node_id = raw["ID"]
            hostname = raw["Hostname"]
        except KeyError as e:
            raise ControlPlaneError(f"Node record without {e.args[0]}: {raw!r}") from e

        manager_status = (raw.get("ManagerStatus") or "").strip()
        return cls(
            id=node_id.rstrip(" *"),
            hostname=hostname,
            role=Role.MANAGER if manager_status else Role.WORKER,
            availability=_parse_enum(Availability, raw.get("Availability", ""), Availability.ACTIVE),
            state=_parse_enum(Reachability, raw.get("Status", ""), Reachability.UNKNOWN),
            leader=manager_status == "Leader",
        )


def parse_node_ls(output: str) -> list[NodeRecord]:
    """Parse ``docker node ls --format '{{json .}}'`` (one JSON object per line)."""
    records: list[NodeRecord] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as e:
            raise ControlPlaneError(f"Unparseable node ls line: {line!r}") from e
        records.append(NodeRecord.from_json(raw))
    return records


def _parse_enum[E: StrEnum](enum: type[E], value: str, default: E) -> E:
    value = value.strip()
    for member in enum:
        if member.value.lower() == value.lower():
            return member
    return default


@dataclass(frozen=True, slots=True)
class JoinTokens:
    manager: str
    worker: str

    def for_role(self, role: Role) -> str:
        return self.manager if role is Role.MANAGER else self.worker


def records_for(records: Iterable[NodeRecord], hostname: str) -> list[NodeRecord]:
    """All records for ``hostname``; stale duplicates are kept."""
    return [r for r in records if r.hostname == hostname]
