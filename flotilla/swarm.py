"""Docker Swarm control-plane client.

Every call is a ``docker ...`` command executed on a named instance
through the instance provider: management calls run on the leader,
join/leave run on the instance itself. Output is parsed once here into
typed records so nothing downstream depends on column positions.
"""

from __future__ import annotations

import shlex
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from flotilla.constants import DEFAULT_DOCKER_COMMAND, SWARM_PORT
from flotilla.core.exceptions import CommandError, ControlPlaneError
from flotilla.model import Availability, JoinTokens, NodeRecord, Role, parse_node_ls
from flotilla.providers.provider import InstanceProvider

log = logger.bind(component="swarm")

_NODE_FORMAT = "{{json .}}"
_SERVICE_FORMAT = "{{.Name}}\t{{.Mode}}\t{{.Replicas}}\t{{.Image}}\t{{.Ports}}"


@dataclass(frozen=True, slots=True)
class ServiceRecord:
    """One row of ``docker service ls``."""

    name: str
    mode: str
    replicas: str
    image: str
    ports: str = ""


def _quote(*parts: str) -> str:
    return " ".join(shlex.quote(p) for p in parts)


class SwarmClient:
    """Drives a swarm through ``docker`` commands run on its instances."""

    def __init__(
        self,
        provider: InstanceProvider,
        docker: str = DEFAULT_DOCKER_COMMAND,
        port: int = SWARM_PORT,
    ) -> None:
        self._provider = provider
        self._docker = docker
        self._port = port

    async def _docker_on(self, name: str, *args: str) -> str:
        return await self._provider.exec(name, f"{self._docker} {_quote(*args)}")

    def endpoint(self, address: str) -> str:
        return f"{address}:{self._port}"

    # -------------------------------------------------------------------------
    # Local node state
    # -------------------------------------------------------------------------

    async def local_state(self, name: str) -> str:
        """Swarm state of the engine on ``name``: active, inactive, pending, error, locked."""
        out = await self._docker_on(name, "info", "--format", "{{.Swarm.LocalNodeState}}")
        return out.strip().lower()

    async def is_member(self, name: str) -> bool:
        return await self.local_state(name) == "active"

    # -------------------------------------------------------------------------
    # Cluster bootstrap
    # -------------------------------------------------------------------------

    async def init(self, leader: str, advertise_addr: str, listen_addr: str) -> None:
        log.info("Initializing swarm on {leader} ({addr})", leader=leader, addr=advertise_addr)
        await self._docker_on(
            leader, "swarm", "init",
            "--advertise-addr", advertise_addr,
            "--listen-addr", self.endpoint(listen_addr),
        )

    async def join_token(self, leader: str, role: Role) -> str:
        out = await self._docker_on(leader, "swarm", "join-token", "-q", role.value)
        token = out.strip()
        if not token:
            raise ControlPlaneError(f"Empty {role} join token from {leader}")
        return token

    async def join_tokens(self, leader: str) -> JoinTokens:
        return JoinTokens(
            manager=await self.join_token(leader, Role.MANAGER),
            worker=await self.join_token(leader, Role.WORKER),
        )

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    async def join(self, name: str, manager_addr: str, listen_addr: str, token: str) -> None:
        log.info("{name} joining swarm at {manager}", name=name, manager=manager_addr)
        await self._docker_on(
            name, "swarm", "join",
            "--token", token,
            "--advertise-addr", listen_addr,
            "--listen-addr", self.endpoint(listen_addr),
            self.endpoint(manager_addr),
        )

    async def leave(self, name: str, force: bool = True) -> None:
        args = ["swarm", "leave"]
        if force:
            args.append("--force")
        try:
            await self._docker_on(name, *args)
        except CommandError as e:
            if "not part of a swarm" in e.stderr:
                log.debug("{name} already out of the swarm", name=name)
                return
            raise

    # -------------------------------------------------------------------------
    # Node records (run on the leader)
    # -------------------------------------------------------------------------

    async def node_ls(self, leader: str) -> list[NodeRecord]:
        out = await self._docker_on(leader, "node", "ls", "--format", _NODE_FORMAT)
        return parse_node_ls(out)

    async def update_availability(self, leader: str, node_id: str, availability: Availability) -> None:
        await self._docker_on(leader, "node", "update", "--availability", availability.value, node_id)

    async def promote(self, leader: str, node_id: str) -> None:
        await self._docker_on(leader, "node", "promote", node_id)

    async def demote(self, leader: str, node_id: str) -> None:
        await self._docker_on(leader, "node", "demote", node_id)

    async def node_rm(self, leader: str, node_id: str) -> None:
        await self._docker_on(leader, "node", "rm", node_id)

    # -------------------------------------------------------------------------
    # Services (auxiliary commands)
    # -------------------------------------------------------------------------

    async def service_ls(self, leader: str) -> list[ServiceRecord]:
        out = await self._docker_on(leader, "service", "ls", "--format", _SERVICE_FORMAT)
        services: list[ServiceRecord] = []
        for line in out.splitlines():
            if not line.strip():
                continue
            fields = line.split("\t")
            if len(fields) < 4:
                raise ControlPlaneError(f"Unparseable service ls line: {line!r}")
            services.append(ServiceRecord(*fields[:5]))
        return services

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
        args = ["service", "create", "--detach", "--name", service, "--replicas", str(replicas)]
        for port in publish:
            args.extend(["--publish", port])
        for constraint in constraints:
            args.extend(["--constraint", constraint])
        for mount in mounts:
            args.extend(["--mount", mount])
        args.append(image)
        log.info("Creating service {service} ({image})", service=service, image=image)
        await self._docker_on(leader, *args)

    async def service_scale(self, leader: str, service: str, replicas: int) -> None:
        log.info("Scaling service {service} to {n}", service=service, n=replicas)
        await self._docker_on(leader, "service", "scale", "--detach", f"{service}={replicas}")

    async def service_logs(self, leader: str, service: str, tail: int = 100) -> str:
        return await self._docker_on(
            leader, "service", "logs", "--no-trunc", "--tail", str(tail), service,
        )
