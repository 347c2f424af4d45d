"""Reconciliation orchestrator - one convergence pass per command.

``scale`` is the core pass; ``start`` and ``delete`` are built on it:

1. diff wanted names against the provider listing
2. create the missing instances
3. delete the extra ones (gracefully leaving the swarm first)
4. start whatever is stopped
5. initialize the swarm on the leader if needed and fetch join tokens
6. join every wanted manager and worker concurrently

Phases are strictly sequential; each ends with a barrier. A pass that
fails part way leaves the cluster in its partial state, and running
the same pass again picks up from there.
"""

from __future__ import annotations

from loguru import logger

from flotilla.config import Settings, TimingConfig
from flotilla.core.exceptions import PreconditionError
from flotilla.lifecycle import FirstCreationGuard, LifecycleDriver, names_of
from flotilla.membership import Membership
from flotilla.model import Diff, Instance, Naming, PowerState, Role, Topology
from flotilla.providers.provider import InstanceProvider
from flotilla.swarm import SwarmClient
from flotilla.topology import creation_order, current_topology, diff
from flotilla.utils.conc import join_all

log = logger.bind(component="orchestrator")


class Orchestrator:

    def __init__(
        self,
        provider: InstanceProvider,
        swarm: SwarmClient,
        naming: Naming,
        timing: TimingConfig | None = None,
        guard: FirstCreationGuard | None = None,
    ) -> None:
        self.provider = provider
        self.swarm = swarm
        self.naming = naming
        self.timing = timing or TimingConfig()
        self.membership = Membership(provider, swarm, naming, self.timing)
        self.lifecycle = LifecycleDriver(provider, self.membership, naming, self.timing, guard)

    @classmethod
    def from_settings(cls, settings: Settings) -> Orchestrator:
        provider = settings.provider.create_provider()
        swarm = SwarmClient(provider, docker=settings.swarm.docker, port=settings.swarm.port)
        return cls(provider, swarm, settings.naming, settings.timing)

    @property
    def leader(self) -> str:
        return self.naming.leader

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def actual(self) -> list[str]:
        return names_of(await self.provider.list(self.naming.pattern()))

    async def instances(self) -> list[Instance]:
        """Provisioned cluster instances in creation order, leader first."""
        instances: list[Instance] = []
        for name, power in await self.provider.list(self.naming.pattern()):
            parsed = self.naming.parse(name)
            if parsed is not None:
                role, index = parsed
                instances.append(Instance(name=name, role=role, index=index, power=power))
        return sorted(instances, key=lambda i: (i.role is Role.WORKER, i.index))

    async def current(self) -> Topology:
        return current_topology(await self.actual(), self.naming)

    # -------------------------------------------------------------------------
    # Convergence
    # -------------------------------------------------------------------------

    async def scale(self, topology: Topology, *, graceful: bool = True) -> Diff:
        """Converge instances and swarm membership on ``topology``."""
        plan = diff(topology, await self.actual(), self.naming)
        log.info(
            "Scaling to {m} manager(s) + {w} worker(s): missing={missing} extra={extra}",
            m=topology.managers, w=topology.workers,
            missing=sorted(plan.missing), extra=sorted(plan.extra),
        )

        await self.lifecycle.create_missing(plan.missing)
        await self.lifecycle.delete_extra(plan.extra, graceful=graceful)
        await self.lifecycle.start_stopped()

        if topology.managers == 0:
            if topology.workers:
                log.warning("No managers wanted: {n} worker(s) left without a swarm", n=topology.workers)
            return plan

        await self.membership.initialize()
        tokens = await self.membership.tokens()
        leader_addr = await self.provider.address(self.leader)

        await join_all(
            "join",
            {
                name: self.membership.join(name, self._role(name), tokens, leader_addr)
                for name in creation_order(plan.wanted, self.naming)
            },
        )
        await self.membership.prune(plan.wanted)
        log.info("Cluster converged on {n} node(s)", n=topology.total)
        return plan

    async def start(self, topology: Topology) -> Diff:
        return await self.scale(topology)

    async def delete(self) -> Diff:
        """Destroy every cluster instance without leaving the swarm first."""
        return await self.scale(Topology(managers=0, workers=0), graceful=False)

    async def stop(self) -> list[str]:
        return await self.lifecycle.stop_all()

    def connection_hint(self) -> str:
        return self.provider.env_hint(self.leader)

    # -------------------------------------------------------------------------
    # Preconditions
    # -------------------------------------------------------------------------

    async def require_active(self) -> str:
        """Return the leader name if it runs an active swarm, else fail fast."""
        leader = self.leader
        if await self.provider.state(leader) is not PowerState.RUNNING:
            raise PreconditionError(
                f"{leader} is not running; start the cluster first (flotilla start)"
            )
        if not await self.swarm.is_member(leader):
            raise PreconditionError(
                f"{leader} is not part of an active swarm; run flotilla start or flotilla scale"
            )
        return leader

    def _role(self, name: str) -> Role:
        role = self.naming.role_of(name)
        if role is None:
            raise ValueError(f"{name} does not follow the naming convention")
        return role
