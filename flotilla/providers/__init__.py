"""Instance providers for Flotilla."""

from flotilla.providers.machine import DockerMachine, DockerMachineProvider
from flotilla.providers.provider import InstanceProvider

__all__ = [
    "DockerMachine",
    "DockerMachineProvider",
    "InstanceProvider",
]
