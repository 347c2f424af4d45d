"""SSH access to docker-machine instances.

Connection details come from ``docker-machine inspect`` and are bound at
construction. An instance gets a new address every time it is stopped and
started, so a transport lives for one ``async with`` block and is never
cached across operations.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field

import asyncssh
from loguru import logger

from flotilla.core.exceptions import CommandError

log = logger.bind(component="ssh")

_PREVIEW = 80


@dataclass
class SSHTransport:
    """One SSH session to one instance.

    Connecting is a single attempt: callers that need to wait for an
    instance to come up do so through ``flotilla.readiness``.

    Example:
        >>> async with SSHTransport(host="192.168.99.101", user="docker",
        ...                         key_path="~/.docker/machine/machines/manager0/id_rsa") as ssh:
        ...     state = await ssh.run("docker info --format '{{.Swarm.LocalNodeState}}'")
    """

    host: str
    user: str
    key_path: str
    port: int = 22
    connect_timeout: float = 30.0

    _conn: asyncssh.SSHClientConnection | None = field(default=None, repr=False)

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"

    async def __aenter__(self) -> SSHTransport:
        log.debug("connecting to {target}", target=self.target)
        try:
            # docker-machine regenerates host keys with the certificates
            self._conn = await asyncssh.connect(
                self.host,
                port=self.port,
                username=self.user,
                client_keys=[self.key_path],
                known_hosts=None,
                connect_timeout=self.connect_timeout,
            )
        except (OSError, asyncssh.Error) as e:
            raise CommandError(f"ssh {self.target}", None, str(e)) from e
        return self

    async def __aexit__(self, *_: object) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(conn.wait_closed(), timeout=5.0)

    async def run(self, command: str, timeout: float | None = None) -> str:
        """Run ``command`` on the instance and return its stdout.

        Raises:
            CommandError: When the command exits non-zero or the session drops.
        """
        if self._conn is None:
            raise RuntimeError(f"SSH session to {self.target} is not open")

        preview = command if len(command) <= _PREVIEW else command[:_PREVIEW] + "..."
        log.debug("{host}$ {command}", host=self.host, command=preview)
        try:
            result = await self._conn.run(command, timeout=timeout, check=False)
        except (OSError, asyncssh.Error) as e:
            raise CommandError(command, None, str(e)) from e

        if result.exit_status:
            raise CommandError(command, result.exit_status, str(result.stderr or ""))
        return str(result.stdout or "")
