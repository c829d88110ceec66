from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from check_orchestrator.config import Settings, get_settings
from check_orchestrator.errors import Cancelled, ConfigError
from check_orchestrator.models import Run, RunResult, Stage, StageResult, utcnow
from check_orchestrator.reporting import render_report
from check_orchestrator.runner import StageRunner
from check_orchestrator.toolchain import ToolchainResolver

logger = logging.getLogger(__name__)


def configure(
    ambient_env: Mapping[str, Any] | None,
    stages: Iterable[Stage | Mapping[str, Any]],
    *,
    working_directory: str | None = None,
) -> Run:
    """Validate a stage set and bind it to an ambient environment.

    Raises ``ConfigError`` for an empty stage set, a stage without a command, or
    duplicate stage names. Nothing is executed.
    """
    parsed: list[Stage] = []
    for index, item in enumerate(stages):
        if isinstance(item, Stage):
            parsed.append(item)
            continue
        try:
            parsed.append(Stage.model_validate(item))
        except ValidationError as exc:
            name = item.get("name") if isinstance(item, Mapping) else None
            raise ConfigError(
                f"Invalid definition for stage #{index + 1}: {exc}", stage=name
            ) from exc
    if not parsed:
        raise ConfigError("At least one stage must be configured")

    duplicates = sorted(name for name, count in Counter(s.name for s in parsed).items() if count > 1)
    if duplicates:
        raise ConfigError(f"Duplicate stage names: {', '.join(duplicates)}")
    for stage in parsed:
        if not stage.command:
            raise ConfigError("Stage has an empty command", stage=stage.name)

    options: dict[str, Any] = {"stages": tuple(parsed)}
    if working_directory is not None:
        options["working_directory"] = working_directory
    try:
        return Run(ambient_env=ambient_env or {}, **options)
    except ValidationError as exc:
        raise ConfigError(f"Invalid ambient environment: {exc}") from exc


def select_stages(run: Run, names: Sequence[str]) -> Run:
    if not names:
        return run
    unknown = sorted(set(names) - set(run.stage_names()))
    if unknown:
        raise ConfigError(f"Unknown stage names: {', '.join(unknown)}")
    wanted = set(names)
    return run.model_copy(
        update={"stages": tuple(stage for stage in run.stages if stage.name in wanted)}
    )


class CheckOrchestrator:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        runner: StageRunner | None = None,
        max_parallel: int | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._runner = runner or StageRunner(
            toolchains=ToolchainResolver(
                probe=self._settings.toolchain_probe,
                launcher=self._settings.toolchain_launcher,
                kill_grace_seconds=self._settings.kill_grace_seconds,
            ),
            kill_grace_seconds=self._settings.kill_grace_seconds,
        )
        if max_parallel is not None and max_parallel < 0:
            raise ConfigError(f"max_parallel must be 0 or greater, got {max_parallel}")
        if max_parallel is None:
            self._max_parallel = self._settings.parallel_limit()
        else:
            self._max_parallel = max_parallel or None

    def configure(
        self,
        ambient_env: Mapping[str, Any] | None,
        stages: Iterable[Stage | Mapping[str, Any]],
        *,
        working_directory: str | None = None,
    ) -> Run:
        return configure(ambient_env, stages, working_directory=working_directory)

    async def execute_async(self, run: Run) -> RunResult:
        """Run every stage and collect one result per stage, in configuration order.

        A failing stage never stops the others. If this coroutine is cancelled, every
        in-flight child process is terminated before ``CancelledError`` propagates.
        """
        started_at = utcnow()
        base_env = dict(os.environ) if self._settings.inherit_environment else {}
        semaphore = asyncio.Semaphore(self._max_parallel) if self._max_parallel else None
        logger.info(
            "Executing %d stages (parallel limit: %s)",
            len(run.stages),
            self._max_parallel or "none",
        )

        async def run_one(stage: Stage) -> StageResult:
            if semaphore is None:
                return await self._runner.run_stage(stage, run, base_env)
            async with semaphore:
                return await self._runner.run_stage(stage, run, base_env)

        tasks = [
            asyncio.create_task(run_one(stage), name=f"stage:{stage.name}") for stage in run.stages
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            pending = [task for task in tasks if not task.done()]
            if pending:
                logger.warning("Stopping %d in-flight stages", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        result = RunResult(
            stage_results=tuple(results), started_at=started_at, finished_at=utcnow()
        )
        if result.success:
            logger.info("All %d stages passed", len(result.stage_results))
        else:
            logger.warning("Failing stages: %s", ", ".join(result.failing_stages))
        return result

    def execute(self, run: Run, *, timeout: float | None = None) -> RunResult:
        """Blocking form of ``execute_async``.

        SIGINT, SIGTERM and an expired ``timeout`` all raise ``Cancelled``; no partial
        result is returned.
        """
        deadline = timeout if timeout is not None else self._settings.run_timeout
        if deadline is not None and not deadline > 0:
            raise ConfigError(f"timeout must be greater than 0, got {deadline}")
        try:
            return asyncio.run(self._execute_until(run, deadline))
        except (asyncio.CancelledError, KeyboardInterrupt) as exc:
            raise Cancelled("Run was cancelled before all stages finished") from exc
        except asyncio.TimeoutError as exc:
            raise Cancelled(f"Run exceeded its {deadline:g}s deadline") from exc

    def report(self, result: RunResult) -> str:
        return render_report(result)

    async def _execute_until(self, run: Run, timeout: float | None) -> RunResult:
        loop = asyncio.get_running_loop()
        installed = _install_cancel_handlers(loop, asyncio.current_task())
        try:
            if timeout is None:
                return await self.execute_async(run)
            return await asyncio.wait_for(self.execute_async(run), timeout=timeout)
        finally:
            for sig, previous in installed.items():
                loop.remove_signal_handler(sig)
                if previous is not None:
                    signal.signal(sig, previous)


def _install_cancel_handlers(
    loop: asyncio.AbstractEventLoop, task: asyncio.Task | None
) -> dict[int, Any]:
    if task is None:
        return {}
    installed: dict[int, Any] = {}
    for name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        previous = signal.getsignal(sig)
        try:
            loop.add_signal_handler(sig, _cancel_on_signal, task, name)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Cannot install %s handler on this platform/thread", name)
            continue
        installed[sig] = previous
    return installed


def _cancel_on_signal(task: asyncio.Task, name: str) -> None:
    logger.warning("Received %s; cancelling run", name)
    task.cancel()
