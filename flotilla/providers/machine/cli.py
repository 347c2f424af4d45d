"""Async wrapper around the docker-machine binary."""

from __future__ import annotations

import asyncio
import json
import shlex
from typing import Any

from loguru import logger

from flotilla.core.exceptions import CommandError

log = logger.bind(component="machine")


async def run(binary: str, *args: str) -> str:
    """Run ``binary args...`` and return its stripped stdout.

    Raises:
        CommandError: On a non-zero exit (with the captured stderr) or when the
            binary is missing or not executable.
    """
    command = shlex.join([binary, *args])
    log.debug("$ {command}", command=command)
    try:
        proc = await asyncio.create_subprocess_exec(
            binary, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError(command, None, f"cannot run {binary}: {e.strerror or e}") from e

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise CommandError(command, proc.returncode, stderr.decode(errors="replace"))
    return stdout.decode(errors="replace").strip()


async def run_json(binary: str, *args: str) -> Any:
    out = await run(binary, *args)
    try:
        return json.loads(out)
    except json.JSONDecodeError as e:
        raise CommandError(shlex.join([binary, *args]), 0, f"output is not JSON: {e}") from e
