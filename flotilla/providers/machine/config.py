from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from flotilla.constants import DEFAULT_MACHINE_BINARY, DEFAULT_MACHINE_DRIVER

if TYPE_CHECKING:
    from flotilla.providers.machine.provider import DockerMachineProvider

type SSHMode = Literal["native", "machine"]


@dataclass(frozen=True, slots=True)
class DockerMachine:
    """docker-machine provider configuration.

    Every instance is a docker-machine host with the Docker engine
    preinstalled. ``options`` are passed to ``docker-machine create`` as
    ``--<key> <value>`` pairs, e.g. ``{"virtualbox-memory": "2048"}``.

    ``ssh`` selects how remote commands run: ``native`` opens an asyncssh
    connection with the machine's own key, ``machine`` shells out to
    ``docker-machine ssh``.

    Example:
        >>> provider = DockerMachine(driver="virtualbox").create_provider()
    """

    binary: str = DEFAULT_MACHINE_BINARY
    driver: str = DEFAULT_MACHINE_DRIVER
    options: Mapping[str, str] = field(default_factory=dict)
    ssh: SSHMode = "native"

    def create_provider(self) -> DockerMachineProvider:
        from flotilla.providers.machine.provider import DockerMachineProvider
        return DockerMachineProvider(self)

    @property
    def type(self) -> str: return "docker-machine"
