"""Flotilla - provision, scale and tear down a Docker Swarm of docker-machine instances.

Example:

    import asyncio

    from flotilla import Orchestrator, Topology, resolve_settings

    orchestrator = Orchestrator.from_settings(resolve_settings())
    asyncio.run(orchestrator.scale(Topology(managers=1, workers=2)))
"""

from flotilla.config import Settings, TimingConfig, resolve_settings
from flotilla.core.exceptions import (
    CommandError,
    ConfigurationError,
    ControlPlaneError,
    FlotillaError,
    PhaseError,
    PreconditionError,
    ProvisioningError,
    ReadinessTimeoutError,
)
from flotilla.lifecycle import FirstCreationGuard, LifecycleDriver
from flotilla.logging import LogConfig
from flotilla.membership import Membership
from flotilla.model import (
    Availability,
    Diff,
    JoinTokens,
    MemberState,
    Naming,
    NodeRecord,
    PowerState,
    Reachability,
    Role,
    Topology,
)
from flotilla.orchestrator import Orchestrator
from flotilla.providers import DockerMachine, DockerMachineProvider, InstanceProvider
from flotilla.readiness import wait_until
from flotilla.swarm import SwarmClient
from flotilla.topology import diff

__version__ = "0.1.0"

__all__ = [
    # Engine
    "Orchestrator",
    "LifecycleDriver",
    "Membership",
    "FirstCreationGuard",
    "diff",
    "wait_until",
    # Collaborators
    "SwarmClient",
    "InstanceProvider",
    "DockerMachine",
    "DockerMachineProvider",
    # Model
    "Availability",
    "Diff",
    "JoinTokens",
    "MemberState",
    "Naming",
    "NodeRecord",
    "PowerState",
    "Reachability",
    "Role",
    "Topology",
    # Config
    "LogConfig",
    "Settings",
    "TimingConfig",
    "resolve_settings",
    # Errors
    "CommandError",
    "ConfigurationError",
    "ControlPlaneError",
    "FlotillaError",
    "PhaseError",
    "PreconditionError",
    "ProvisioningError",
    "ReadinessTimeoutError",
]
