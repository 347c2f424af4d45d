"""In-memory cluster used by the engine tests.

``FakeCluster`` keeps machines and swarm records in one place so the
provider side and the control-plane side always agree. Every mutating
call is appended to ``cluster.calls`` as ``(op, name)``; reads are not
recorded, which lets tests assert "nothing changed" by comparing call
logs. Each fake call yields to the event loop once so concurrent
fan-outs interleave the way real subprocesses would.
"""

from __future__ import annotations

import asyncio
import itertools
import re
from collections.abc import Iterable, Sequence
from dataclasses import replace

import pytest

from flotilla.config import TimingConfig
from flotilla.core.exceptions import CommandError, ProvisioningError
from flotilla.lifecycle import FirstCreationGuard
from flotilla.model import (
    Availability,
    JoinTokens,
    Naming,
    NodeRecord,
    PowerState,
    Reachability,
    Role,
)
from flotilla.orchestrator import Orchestrator
from flotilla.swarm import ServiceRecord

FAST = TimingConfig(stagger_delay=0, settle_delay=0, poll_attempts=3, poll_interval=0)


class FakeCluster:
    def __init__(self, naming: Naming | None = None) -> None:
        self.naming = naming or Naming()
        self.calls: list[tuple[str, str]] = []
        self.provider = FakeProvider(self)
        self.swarm = FakeSwarm(self)

    def record(self, op: str, name: str) -> None:
        self.calls.append((op, name))

    def ops(self, op: str) -> list[str]:
        return [name for kind, name in self.calls if kind == op]

    def index(self, op: str, name: str) -> int:
        return self.calls.index((op, name))

    def seed(
        self,
        managers: int = 0,
        workers: int = 0,
        *,
        stopped: Iterable[str] = (),
        in_swarm: bool = True,
    ) -> None:
        """Provision machines directly; with ``in_swarm`` they form a swarm led by the leader."""
        names = [self.naming.name(Role.MANAGER, i) for i in range(managers)]
        names += [self.naming.name(Role.WORKER, i) for i in range(workers)]
        stopped = set(stopped)
        for name in names:
            self.provider.machines[name] = PowerState.STOPPED if name in stopped else PowerState.RUNNING
            self.provider.assign_address(name)
        if in_swarm and managers:
            self.swarm.bootstrap(self.naming.leader)
            for name in names[1:]:
                self.swarm.add_node(name, self.naming.role_of(name))


class FakeProvider:
    """InstanceProvider backed by a dict of machines."""

    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster
        self.machines: dict[str, PowerState] = {}
        self.addresses: dict[str, str] = {}
        self.fail_create: set[str] = set()
        self.never_running: set[str] = set()
        self.destroy_batches: list[tuple[str, ...]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._octets = itertools.count(10)

    def assign_address(self, name: str) -> None:
        self.addresses[name] = f"192.168.99.{next(self._octets)}"

    async def create(self, name: str) -> None:
        self.cluster.record("create-begin", name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            if name in self.fail_create:
                raise ProvisioningError(f"Failed to create {name}: quota exceeded")
            self.machines[name] = PowerState.RUNNING
            self.assign_address(name)
            self.cluster.record("create", name)
        finally:
            self.in_flight -= 1

    async def destroy(self, names: Sequence[str]) -> None:
        await asyncio.sleep(0)
        self.destroy_batches.append(tuple(names))
        for name in names:
            self.cluster.record("destroy", name)
            self.machines.pop(name, None)
            self.addresses.pop(name, None)
            self.cluster.swarm.active.discard(name)

    async def start(self, name: str) -> None:
        await asyncio.sleep(0)
        self.cluster.record("start", name)
        if name not in self.never_running:
            self.machines[name] = PowerState.RUNNING
            self.assign_address(name)

    async def stop(self, name: str) -> None:
        await asyncio.sleep(0)
        self.cluster.record("stop", name)
        self.machines[name] = PowerState.STOPPED

    async def list(
        self, pattern: str, state: PowerState | None = None,
    ) -> Sequence[tuple[str, PowerState]]:
        await asyncio.sleep(0)
        regex = re.compile(pattern)
        return sorted(
            (name, power) for name, power in self.machines.items()
            if regex.match(name) and (state is None or power is state)
        )

    async def state(self, name: str) -> PowerState:
        await asyncio.sleep(0)
        return self.machines.get(name, PowerState.ABSENT)

    async def address(self, name: str) -> str:
        await asyncio.sleep(0)
        if name not in self.addresses:
            raise CommandError(f"docker-machine ip {name}", 1, f'Host "{name}" does not exist')
        return self.addresses[name]

    async def regenerate_credentials(self, name: str) -> None:
        await asyncio.sleep(0)
        self.cluster.record("regen", name)

    async def exec(self, name: str, command: str) -> str:
        raise NotImplementedError("the fake swarm does not run commands")

    def env_hint(self, name: str) -> str:
        return f'eval "$(fake-machine env {name})"'


class FakeSwarm:
    """SwarmClient stand-in that keeps node records in memory."""

    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster
        self.active: set[str] = set()
        self.nodes: list[NodeRecord] = []
        self.services: dict[str, ServiceRecord] = {}
        self.generation = 0
        self._ids = itertools.count(1)

    # -- helpers --------------------------------------------------------------

    def bootstrap(self, leader: str) -> None:
        self.generation += 1
        self.active = {leader}
        self.nodes = [self._new_record(leader, Role.MANAGER, leader=True)]

    def add_node(self, name: str, role: Role, state: Reachability = Reachability.READY) -> NodeRecord:
        record = self._new_record(name, role, state=state)
        self.nodes.append(record)
        if state is not Reachability.DOWN:
            self.active.add(name)
        return record

    def _new_record(
        self, name: str, role: Role, *, leader: bool = False, state: Reachability = Reachability.READY,
    ) -> NodeRecord:
        return NodeRecord(
            id=f"node{next(self._ids)}",
            hostname=name,
            role=role,
            availability=Availability.ACTIVE,
            state=state,
            leader=leader,
        )

    def _replace(self, node_id: str, **changes: object) -> NodeRecord:
        for i, record in enumerate(self.nodes):
            if record.id == node_id:
                self.nodes[i] = replace(record, **changes)
                return self.nodes[i]
        raise CommandError("docker node", 1, f"node {node_id} not found")

    def _require_manager(self, leader: str) -> None:
        running = self.cluster.provider.machines.get(leader) is PowerState.RUNNING
        if not running or leader not in self.active or not self.nodes:
            raise CommandError("docker node ls", 1, "This node is not a swarm manager.")

    def _tokens(self) -> JoinTokens:
        return JoinTokens(
            manager=f"SWMTKN-{self.generation}-manager",
            worker=f"SWMTKN-{self.generation}-worker",
        )

    # -- SwarmClient surface -------------------------------------------------

    async def local_state(self, name: str) -> str:
        await asyncio.sleep(0)
        return "active" if name in self.active else "inactive"

    async def is_member(self, name: str) -> bool:
        return await self.local_state(name) == "active"

    async def init(self, leader: str, advertise_addr: str, listen_addr: str) -> None:
        await asyncio.sleep(0)
        self.cluster.record("init", leader)
        self.bootstrap(leader)

    async def join_token(self, leader: str, role: Role) -> str:
        await asyncio.sleep(0)
        self._require_manager(leader)
        return self._tokens().for_role(role)

    async def join_tokens(self, leader: str) -> JoinTokens:
        return JoinTokens(
            manager=await self.join_token(leader, Role.MANAGER),
            worker=await self.join_token(leader, Role.WORKER),
        )

    async def join(self, name: str, manager_addr: str, listen_addr: str, token: str) -> None:
        await asyncio.sleep(0)
        tokens = self._tokens()
        if token not in (tokens.manager, tokens.worker):
            raise CommandError("docker swarm join", 1, "invalid join token")
        self.cluster.record("join", name)
        self.add_node(name, Role.MANAGER if token == tokens.manager else Role.WORKER)

    async def leave(self, name: str, force: bool = True) -> None:
        await asyncio.sleep(0)
        if name not in self.active:
            return
        self.cluster.record("leave", name)
        self.active.discard(name)
        if name == self.cluster.naming.leader:
            self.nodes = []
            self.active = set()
            return
        for record in self.nodes:
            if record.hostname == name:
                self._replace(record.id, state=Reachability.DOWN)

    async def node_ls(self, leader: str) -> list[NodeRecord]:
        await asyncio.sleep(0)
        self._require_manager(leader)
        return list(self.nodes)

    async def update_availability(self, leader: str, node_id: str, availability: Availability) -> None:
        await asyncio.sleep(0)
        record = self._replace(node_id, availability=availability)
        self.cluster.record(availability.value, record.hostname)

    async def promote(self, leader: str, node_id: str) -> None:
        await asyncio.sleep(0)
        record = self._replace(node_id, role=Role.MANAGER)
        self.cluster.record("promote", record.hostname)

    async def demote(self, leader: str, node_id: str) -> None:
        await asyncio.sleep(0)
        record = self._replace(node_id, role=Role.WORKER)
        self.cluster.record("demote", record.hostname)

    async def node_rm(self, leader: str, node_id: str) -> None:
        await asyncio.sleep(0)
        record = next((r for r in self.nodes if r.id == node_id), None)
        if record is None:
            raise CommandError("docker node rm", 1, f"node {node_id} not found")
        if record.state is not Reachability.DOWN or record.role is Role.MANAGER:
            raise CommandError("docker node rm", 1, f"node {node_id} is not down or is a manager")
        self.nodes.remove(record)
        self.cluster.record("rm", record.hostname)

    async def service_ls(self, leader: str) -> list[ServiceRecord]:
        await asyncio.sleep(0)
        self._require_manager(leader)
        return list(self.services.values())

    async def service_exists(self, leader: str, service: str) -> bool:
        return any(s.name == service for s in await self.service_ls(leader))

    async def service_create(
        self,
        leader: str,
        service: str,
        image: str,
        *,
        replicas: int = 1,
        publish: Sequence[str] = (),
        constraints: Sequence[str] = (),
        mounts: Sequence[str] = (),
    ) -> None:
        await asyncio.sleep(0)
        self.cluster.record("service-create", service)
        self.services[service] = ServiceRecord(
            name=service,
            mode="replicated",
            replicas=f"{replicas}/{replicas}",
            image=image,
            ports=", ".join(publish),
        )

    async def service_scale(self, leader: str, service: str, replicas: int) -> None:
        await asyncio.sleep(0)
        self.cluster.record("service-scale", service)
        self.services[service] = replace(self.services[service], replicas=f"{replicas}/{replicas}")

    async def service_logs(self, leader: str, service: str, tail: int = 100) -> str:
        await asyncio.sleep(0)
        return f"{service}.1 | hello from {service}"


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def orchestrator(cluster: FakeCluster) -> Orchestrator:
    return Orchestrator(
        cluster.provider,
        cluster.swarm,
        cluster.naming,
        FAST,
        guard=FirstCreationGuard(),
    )
