from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime

from check_orchestrator.errors import ProcessSpawnError, ToolchainError
from check_orchestrator.models import (
    FailureKind,
    Run,
    Stage,
    StageResult,
    StageStatus,
    utcnow,
)
from check_orchestrator.process import DEFAULT_KILL_GRACE_SECONDS, run_command
from check_orchestrator.toolchain import ToolchainResolver

logger = logging.getLogger(__name__)


class StageRunner:
    def __init__(
        self,
        toolchains: ToolchainResolver | None = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ) -> None:
        self._toolchains = toolchains or ToolchainResolver(kill_grace_seconds=kill_grace_seconds)
        self._kill_grace_seconds = kill_grace_seconds

    async def run_stage(
        self,
        stage: Stage,
        run: Run,
        base_env: Mapping[str, str] | None = None,
    ) -> StageResult:
        started_at = utcnow()
        env = run.environment_for(stage, base_env)
        cwd = run.directory_for(stage)
        command = list(stage.command)
        logger.info("Starting stage %s", stage.name)
        try:
            if stage.toolchain:
                prefix = await self._toolchains.resolve(stage.toolchain, env=env, cwd=cwd)
                command = prefix + command
            outcome = await run_command(
                command, env=env, cwd=cwd, kill_grace_seconds=self._kill_grace_seconds
            )
        except ToolchainError as exc:
            logger.error("Stage %s could not resolve its toolchain: %s", stage.name, exc.message)
            return self._errored(stage, FailureKind.TOOLCHAIN, exc.message, started_at)
        except ProcessSpawnError as exc:
            logger.error("Stage %s could not be launched: %s", stage.name, exc.message)
            return self._errored(stage, FailureKind.SPAWN, exc.message, started_at)

        passed = outcome.exit_code == 0
        if passed:
            logger.info("Stage %s passed", stage.name)
        else:
            logger.warning("Stage %s failed with exit code %d", stage.name, outcome.exit_code)
        return StageResult(
            stage=stage.name,
            status=StageStatus.SUCCESS if passed else StageStatus.FAILURE,
            exit_code=outcome.exit_code,
            output=outcome.output,
            failure_kind=None if passed else FailureKind.EXIT,
            started_at=started_at,
            finished_at=utcnow(),
        )

    @staticmethod
    def _errored(
        stage: Stage, kind: FailureKind, message: str, started_at: datetime
    ) -> StageResult:
        return StageResult(
            stage=stage.name,
            status=StageStatus.FAILURE,
            failure_kind=kind,
            error=message,
            started_at=started_at,
            finished_at=utcnow(),
        )
