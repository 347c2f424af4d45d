"""Auxiliary operations on an already converged cluster.

Visualizer deployment, ad-hoc services, node health and service logs.
All of them run against the leader and require an active swarm.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import aiohttp
from loguru import logger

from flotilla.config import TimingConfig, VisualizerConfig
from flotilla.constants import VISUALIZER_SERVICE
from flotilla.model import NodeRecord, PowerState, records_for
from flotilla.orchestrator import Orchestrator
from flotilla.readiness import wait_until
from flotilla.swarm import ServiceRecord

log = logger.bind(component="services")


@dataclass(frozen=True, slots=True)
class NodeHealth:
    """A swarm node record next to the power state of its instance."""

    name: str
    power: PowerState
    record: NodeRecord | None


async def is_reachable(url: str, timeout: float = 2.0) -> bool:
    """True once ``url`` answers with any non-5xx status."""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session, session.get(url) as resp:
            return resp.status < 500
    except (aiohttp.ClientError, TimeoutError):
        return False


async def deploy_visualizer(
    orchestrator: Orchestrator,
    config: VisualizerConfig,
    timing: TimingConfig,
) -> str:
    """Deploy the swarm visualizer on the managers and wait until it answers.

    Returns:
        The visualizer URL.
    """
    leader = await orchestrator.require_active()
    swarm = orchestrator.swarm

    if await swarm.service_exists(leader, VISUALIZER_SERVICE):
        log.info("Visualizer already deployed")
    else:
        await swarm.service_create(
            leader,
            VISUALIZER_SERVICE,
            config.image,
            publish=[f"{config.port}:8080"],
            constraints=["node.role==manager"],
            mounts=["type=bind,src=/var/run/docker.sock,dst=/var/run/docker.sock"],
        )

    url = f"http://{await orchestrator.provider.address(leader)}:{config.port}"
    await wait_until(
        lambda: is_reachable(url),
        what=f"visualizer at {url}",
        attempts=timing.poll_attempts,
        interval=timing.poll_interval,
    )
    return url


async def ensure_service(
    orchestrator: Orchestrator,
    name: str,
    image: str,
    *,
    replicas: int = 1,
    publish: Sequence[str] = (),
) -> bool:
    """Create ``name`` or scale it to ``replicas`` if it already exists.

    Returns:
        True if the service was created.
    """
    leader = await orchestrator.require_active()
    swarm = orchestrator.swarm
    if await swarm.service_exists(leader, name):
        await swarm.service_scale(leader, name, replicas)
        return False
    await swarm.service_create(leader, name, image, replicas=replicas, publish=publish)
    return True


async def list_services(orchestrator: Orchestrator) -> list[ServiceRecord]:
    leader = await orchestrator.require_active()
    return await orchestrator.swarm.service_ls(leader)


async def health(orchestrator: Orchestrator) -> list[NodeHealth]:
    """Every cluster instance with its power state and swarm record(s)."""
    leader = await orchestrator.require_active()
    records = await orchestrator.swarm.node_ls(leader)

    rows: list[NodeHealth] = []
    seen: set[str] = set()
    for instance in await orchestrator.instances():
        matching = records_for(records, instance.name)
        seen.add(instance.name)
        if not matching:
            rows.append(NodeHealth(name=instance.name, power=instance.power, record=None))
        rows.extend(NodeHealth(name=instance.name, power=instance.power, record=r) for r in matching)
    # Records whose instance is gone entirely.
    rows.extend(
        NodeHealth(name=r.hostname, power=PowerState.ABSENT, record=r)
        for r in records
        if r.hostname not in seen
    )
    return rows


async def service_logs(orchestrator: Orchestrator, service: str, tail: int = 100) -> str:
    leader = await orchestrator.require_active()
    return await orchestrator.swarm.service_logs(leader, service, tail=tail)
