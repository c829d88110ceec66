from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from check_orchestrator.errors import ProcessSpawnError

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 5.0
_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


@dataclass
class CommandOutcome:
    exit_code: int
    output: str


def decode_output(raw: bytes | None) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace").replace("\r\n", "\n")


async def run_command(
    command: Sequence[str],
    *,
    env: Mapping[str, str],
    cwd: str | None = None,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> CommandOutcome:
    """Run ``command`` to completion and capture stdout and stderr interleaved.

    The child gets its own session so the whole process group can be signalled. If the
    awaiting task is cancelled, the group is terminated and reaped before the
    cancellation propagates.
    """
    if not command:
        raise ProcessSpawnError("Cannot launch an empty command")
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=dict(env),
            cwd=cwd,
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:
        logger.debug("Failed to spawn %s", command[0], exc_info=True)
        raise ProcessSpawnError(f"Could not launch {command[0]!r}: {exc}") from exc
    logger.debug("Spawned pid %s: %s", process.pid, " ".join(command))
    try:
        stdout, _ = await process.communicate()
    except asyncio.CancelledError:
        logger.warning("Cancelling pid %s (%s)", process.pid, command[0])
        await terminate(process, kill_grace_seconds)
        raise
    exit_code = process.returncode if process.returncode is not None else -1
    logger.debug("Pid %s exited with %s", process.pid, exit_code)
    return CommandOutcome(exit_code=exit_code, output=decode_output(stdout))


async def terminate(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    if process.returncode is None:
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Pid %s ignored SIGTERM; killing it", process.pid)
            _signal_group(process, _KILL_SIGNAL)
            await process.wait()
    # sweep anything the child left behind in its group
    _signal_group(process, _KILL_SIGNAL)


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        logger.debug("Process group %s already gone", process.pid)
    except PermissionError:
        logger.debug("Not permitted to signal process group %s", process.pid, exc_info=True)
