"""Topology differ: wanted names vs provisioned names."""

from __future__ import annotations

from collections.abc import Iterable

from flotilla.model import Diff, Naming, Role, Topology


def diff(topology: Topology, actual: Iterable[str], naming: Naming) -> Diff:
    """Compute the missing and extra instance names.

    Both sides are computed per role and unioned. Names that do not follow
    the naming convention are not ours and are ignored.
    """
    ours = frozenset(name for name in actual if naming.parse(name) is not None)

    missing: set[str] = set()
    extra: set[str] = set()
    for role in Role:
        wanted = topology.wanted(naming, role)
        present = frozenset(name for name in ours if naming.role_of(name) is role)
        missing |= wanted - present
        extra |= present - wanted

    return Diff(
        wanted=topology.wanted(naming),
        actual=ours,
        missing=frozenset(missing),
        extra=frozenset(extra),
    )


def current_topology(actual: Iterable[str], naming: Naming) -> Topology:
    """Count provisioned instances per role."""
    counts = {Role.MANAGER: 0, Role.WORKER: 0}
    for name in actual:
        role = naming.role_of(name)
        if role is not None:
            counts[role] += 1
    return Topology(managers=counts[Role.MANAGER], workers=counts[Role.WORKER])


def _sort_key(naming: Naming, name: str) -> tuple[int, int, str]:
    parsed = naming.parse(name)
    if parsed is None:
        return (2, 0, name)
    role, index = parsed
    return (0 if role is Role.MANAGER else 1, index, name)


def creation_order(names: Iterable[str], naming: Naming) -> list[str]:
    """Managers before workers, lowest index first: the leader always leads."""
    return sorted(names, key=lambda n: _sort_key(naming, n))


def teardown_order(names: Iterable[str], naming: Naming) -> list[str]:
    """Reverse of creation order: the leader always comes last."""
    return list(reversed(creation_order(names, naming)))
