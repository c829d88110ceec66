from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from check_orchestrator.config import DEFAULT_TOOLCHAIN_LAUNCHER, DEFAULT_TOOLCHAIN_PROBE
from check_orchestrator.errors import ProcessSpawnError, ToolchainError
from check_orchestrator.process import DEFAULT_KILL_GRACE_SECONDS, run_command

logger = logging.getLogger(__name__)

PLACEHOLDER = "{toolchain}"


class ToolchainResolver:
    """Checks that a toolchain selector is usable and returns the prefix that activates it.

    Both templates are argument lists where ``{toolchain}`` is replaced by the selector.
    An empty probe skips the availability check; an empty launcher adds no prefix.
    """

    def __init__(
        self,
        *,
        probe: Sequence[str] | None = None,
        launcher: Sequence[str] | None = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ) -> None:
        self._probe = list(DEFAULT_TOOLCHAIN_PROBE if probe is None else probe)
        self._launcher = list(DEFAULT_TOOLCHAIN_LAUNCHER if launcher is None else launcher)
        self._kill_grace_seconds = kill_grace_seconds

    async def resolve(
        self,
        selector: str,
        *,
        env: Mapping[str, str],
        cwd: str | None = None,
    ) -> list[str]:
        selector = selector.strip()
        if not selector:
            raise ToolchainError("Toolchain selector must not be empty")
        probe = self.render(self._probe, selector)
        if probe:
            logger.info("Probing toolchain %s", selector)
            try:
                outcome = await run_command(
                    probe, env=env, cwd=cwd, kill_grace_seconds=self._kill_grace_seconds
                )
            except ProcessSpawnError as exc:
                raise ToolchainError(
                    f"Toolchain {selector!r} is unavailable: {exc.message}"
                ) from exc
            if outcome.exit_code != 0:
                detail = outcome.output.strip() or "no output"
                raise ToolchainError(
                    f"Toolchain {selector!r} is unavailable "
                    f"(probe exited with {outcome.exit_code}): {detail}"
                )
        return self.render(self._launcher, selector)

    @staticmethod
    def render(template: Sequence[str], selector: str) -> list[str]:
        return [part.replace(PLACEHOLDER, selector) for part in template]
