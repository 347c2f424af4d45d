from flotilla.providers.machine.config import DockerMachine
from flotilla.providers.machine.provider import DockerMachineProvider

__all__ = ["DockerMachine", "DockerMachineProvider"]
