"""Membership state machine: join, drain and leave one instance at a time.

Each instance moves through::

    NotMember -> Joining -> Active -> Draining -> Leaving -> NotMember

The machine only observes and transitions swarm state; the control plane
owns the records. Ordering rules that keep raft healthy:

- a manager is demoted before it drains and leaves, so it never leaves
  the consensus set while still voting;
- a node is drained before it leaves;
- the bootstrap leader is initialized before anything joins and leaves
  after everything else has left. The callers (lifecycle driver and
  orchestrator) enforce the leader ordering; this module enforces the
  per-instance ordering.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from loguru import logger

from flotilla.config import TimingConfig
from flotilla.core.exceptions import CommandError, InvalidTransitionError
from flotilla.model import (
    Availability,
    JoinTokens,
    MemberState,
    Naming,
    NodeRecord,
    PowerState,
    Reachability,
    Role,
    records_for,
)
from flotilla.providers.provider import InstanceProvider
from flotilla.readiness import wait_until
from flotilla.swarm import SwarmClient

log = logger.bind(component="membership")

_TRANSITIONS: dict[MemberState, frozenset[MemberState]] = {
    MemberState.NOT_MEMBER: frozenset({MemberState.JOINING}),
    MemberState.JOINING: frozenset({MemberState.ACTIVE, MemberState.NOT_MEMBER}),
    MemberState.ACTIVE: frozenset({MemberState.DRAINING, MemberState.LEAVING}),
    MemberState.DRAINING: frozenset({MemberState.LEAVING}),
    MemberState.LEAVING: frozenset({MemberState.NOT_MEMBER}),
}


class Membership:
    """Drives instances in and out of the swarm led by ``naming.leader``."""

    def __init__(
        self,
        provider: InstanceProvider,
        swarm: SwarmClient,
        naming: Naming,
        timing: TimingConfig | None = None,
    ) -> None:
        self._provider = provider
        self._swarm = swarm
        self._naming = naming
        self._timing = timing or TimingConfig()
        self._states: dict[str, MemberState] = {}

    @property
    def leader(self) -> str:
        return self._naming.leader

    # -------------------------------------------------------------------------
    # State tracking
    # -------------------------------------------------------------------------

    def state(self, name: str) -> MemberState:
        return self._states.get(name, MemberState.NOT_MEMBER)

    def _observe(self, name: str, member: bool) -> None:
        self._states[name] = MemberState.ACTIVE if member else MemberState.NOT_MEMBER

    def _transition(self, name: str, target: MemberState) -> None:
        current = self.state(name)
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(name, current.value, target.value)
        log.debug("{name}: {current} -> {target}", name=name, current=current, target=target)
        self._states[name] = target

    async def is_member(self, name: str) -> bool:
        """Whether ``name`` currently belongs to the leader's swarm.

        The instance must be running with an active local swarm state and,
        unless it is the leader itself, appear as a live record in the
        leader's node list. An instance still attached to an earlier
        incarnation of the swarm is therefore not a member.
        """
        if await self._provider.state(name) is not PowerState.RUNNING:
            return False
        if not await self._swarm.is_member(name):
            return False
        if name == self.leader:
            return True
        if await self._provider.state(self.leader) is not PowerState.RUNNING:
            return False
        records = records_for(await self._swarm.node_ls(self.leader), name)
        return any(r.state is not Reachability.DOWN for r in records)

    # -------------------------------------------------------------------------
    # Bootstrap
    # -------------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Initialize the swarm on the leader unless it already leads one.

        Returns:
            True if ``swarm init`` was issued.
        """
        leader = self.leader
        if await self._swarm.is_member(leader):
            try:
                nodes = await self._swarm.node_ls(leader)
            except CommandError:
                nodes = []
            if nodes:
                log.debug("Swarm already initialized on {leader}", leader=leader)
                self._observe(leader, True)
                return False

        self._observe(leader, False)
        self._transition(leader, MemberState.JOINING)
        try:
            await self._swarm.leave(leader, force=True)
            address = await self._provider.address(leader)
            await self._swarm.init(leader, advertise_addr=address, listen_addr=address)
        except Exception:
            self._states[leader] = MemberState.NOT_MEMBER
            raise
        self._transition(leader, MemberState.ACTIVE)
        log.info("Swarm initialized on {leader}", leader=leader)
        return True

    async def tokens(self) -> JoinTokens:
        """Fetch fresh join tokens; they change whenever the swarm is re-initialized."""
        return await self._swarm.join_tokens(self.leader)

    # -------------------------------------------------------------------------
    # Join
    # -------------------------------------------------------------------------

    async def join(self, name: str, role: Role, tokens: JoinTokens, manager_addr: str) -> bool:
        """Join ``name`` to the swarm as ``role``.

        Already-members are left alone apart from a role correction.
        Otherwise any stale membership is forced out first and the
        instance joins through ``manager_addr`` with its current address.

        Returns:
            True if a join request was issued.
        """
        if await self.is_member(name):
            self._observe(name, True)
            await self._correct_role(name, role)
            return False

        self._observe(name, False)
        self._transition(name, MemberState.JOINING)
        try:
            await self._swarm.leave(name, force=True)
            address = await self._provider.address(name)
            await self._swarm.join(name, manager_addr, address, tokens.for_role(role))
        except Exception:
            self._states[name] = MemberState.NOT_MEMBER
            raise
        self._transition(name, MemberState.ACTIVE)
        log.info("{name} joined as {role}", name=name, role=role)
        return True

    async def _correct_role(self, name: str, role: Role) -> None:
        if name == self.leader:
            return
        for record in records_for(await self._swarm.node_ls(self.leader), name):
            if record.state is Reachability.DOWN or record.role is role:
                continue
            log.info("{name} is a {actual}, changing to {role}", name=name, actual=record.role, role=role)
            if role is Role.MANAGER:
                await self._swarm.promote(self.leader, record.id)
            else:
                await self._swarm.demote(self.leader, record.id)

    # -------------------------------------------------------------------------
    # Leave
    # -------------------------------------------------------------------------

    async def leave(self, name: str) -> bool:
        """Take ``name`` out of the swarm: demote, drain, leave, remove its records.

        Non-members are a no-op. The leader only force-leaves: it is the
        control plane itself, so there is nobody left to demote it or to
        remove its record.

        Returns:
            True if the instance left the swarm.
        """
        if not await self.is_member(name):
            self._observe(name, False)
            log.debug("{name} is not a member, nothing to leave", name=name)
            return False

        self._observe(name, True)
        if name == self.leader:
            self._transition(name, MemberState.LEAVING)
            await self._swarm.leave(name, force=True)
            self._transition(name, MemberState.NOT_MEMBER)
            log.info("Leader {name} left; swarm dissolved", name=name)
            return True

        leader = self.leader
        records = records_for(await self._swarm.node_ls(leader), name)

        for record in records:
            if record.role is Role.MANAGER:
                log.info("Demoting {name} ({id})", name=name, id=record.id)
                await self._swarm.demote(leader, record.id)

        self._transition(name, MemberState.DRAINING)
        for record in records:
            await self._swarm.update_availability(leader, record.id, Availability.DRAIN)
        if self._timing.settle_delay:
            log.debug("Letting {name} settle for {s}s", name=name, s=self._timing.settle_delay)
            await asyncio.sleep(self._timing.settle_delay)

        self._transition(name, MemberState.LEAVING)
        await self._swarm.leave(name, force=True)

        await wait_until(
            lambda: self._all_down(name),
            what=f"{name} to be reported Down",
            attempts=self._timing.poll_attempts,
            interval=self._timing.poll_interval,
        )
        await self._remove_records(name)

        self._transition(name, MemberState.NOT_MEMBER)
        log.info("{name} left the swarm", name=name)
        return True

    async def _all_down(self, name: str) -> bool:
        records = records_for(await self._swarm.node_ls(self.leader), name)
        return all(r.state is Reachability.DOWN for r in records)

    async def _remove_records(self, name: str) -> None:
        # A hostname can map to several ids after repeated joins; remove them all.
        for record in records_for(await self._swarm.node_ls(self.leader), name):
            log.debug("Removing node record {id} ({name})", id=record.id, name=name)
            await self._swarm.node_rm(self.leader, record.id)

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    async def prune(self, keep: Iterable[str]) -> list[str]:
        """Remove Down records that no longer correspond to a live node.

        A Down record is stale when its hostname is not in ``keep`` or when
        the same hostname also has a live record (a rejoin left the old id
        behind).

        Returns:
            Ids of the removed records.
        """
        keep = frozenset(keep)
        records = await self._swarm.node_ls(self.leader)
        live = {r.hostname for r in records if r.state is not Reachability.DOWN}

        stale: list[NodeRecord] = [
            r for r in records
            if r.state is Reachability.DOWN and (r.hostname not in keep or r.hostname in live)
        ]
        for record in stale:
            log.info("Pruning stale node record {id} ({name})", id=record.id, name=record.hostname)
            if record.role is Role.MANAGER:
                await self._swarm.demote(self.leader, record.id)
            await self._swarm.node_rm(self.leader, record.id)
        return [r.id for r in stale]
