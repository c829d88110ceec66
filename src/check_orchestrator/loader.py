from __future__ import annotations

import logging
import shlex
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import yaml
from pydantic import ValidationError

from check_orchestrator.config import DEFAULT_HTTP_TIMEOUT
from check_orchestrator.errors import ConfigError
from check_orchestrator.models import Stage, coerce_env

logger = logging.getLogger(__name__)

AsyncClientFactory = Callable[[], httpx.AsyncClient]

IGNORED_ACTIONS = frozenset({"actions/checkout"})
TOOLCHAIN_ACTIONS = frozenset({"actions-rs/toolchain", "dtolnay/rust-toolchain"})


def _cargo_udeps_command(inputs: dict[str, Any]) -> list[str]:
    return ["cargo", "udeps", *shlex.split(str(inputs.get("args") or ""))]


COMMAND_ACTIONS: dict[str, Callable[[dict[str, Any]], list[str]]] = {
    "aig787/cargo-udeps-action": _cargo_udeps_command,
}


@dataclass
class LoadedConfig:
    source: str
    ambient_env: dict[str, str] = field(default_factory=dict)
    stages: list[Stage] = field(default_factory=list)


def is_remote(source: str) -> bool:
    return source.startswith(("http://", "https://"))


async def load_config(
    source: str,
    *,
    client_factory: AsyncClientFactory | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> LoadedConfig:
    if is_remote(source):
        text = await fetch_config_text(source, client_factory=client_factory, timeout=timeout)
    else:
        text = read_config_file(source)
    return parse_config(text, source=source)


def read_config_file(path: str | Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read stage configuration {str(path)!r}: {exc}") from exc


async def fetch_config_text(
    url: str,
    *,
    client_factory: AsyncClientFactory | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> str:
    factory = client_factory or (lambda: httpx.AsyncClient(timeout=timeout, follow_redirects=True))
    logger.info("Fetching stage configuration from %s", url)
    try:
        async with factory() as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise ConfigError(f"Cannot fetch stage configuration from {url}: {exc}") from exc
    return response.text


def parse_config(text: str, *, source: str = "<string>") -> LoadedConfig:
    """Parse either a native ``stages:`` document or a GitHub Actions workflow."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{source} is not valid YAML: {exc}") from exc
    if not isinstance(document, dict):
        raise ConfigError(f"{source} must contain a mapping at the top level")
    if "jobs" in document:
        return _from_workflow(document, source)
    if "stages" in document:
        return _from_native(document, source)
    raise ConfigError(f"{source} defines neither 'stages' nor 'jobs'")


def _ambient_env(document: dict[str, Any], source: str) -> dict[str, str]:
    try:
        return coerce_env(document.get("env"))
    except ValueError as exc:
        raise ConfigError(f"{source}: top-level env is invalid: {exc}") from exc


def _build_stage(definition: dict[str, Any], source: str) -> Stage:
    try:
        return Stage.model_validate(definition)
    except ValidationError as exc:
        raise ConfigError(
            f"{source}: invalid stage definition: {exc}", stage=definition.get("name")
        ) from exc


def _from_native(document: dict[str, Any], source: str) -> LoadedConfig:
    unknown = set(document) - {"env", "stages"}
    if unknown:
        raise ConfigError(f"{source}: unknown top-level keys: {', '.join(sorted(unknown))}")
    entries = document.get("stages")
    if not isinstance(entries, list):
        raise ConfigError(f"{source}: 'stages' must be a list")
    stages = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigError(f"{source}: every stage must be a mapping")
        stages.append(_build_stage(entry, source))
    return LoadedConfig(source=source, ambient_env=_ambient_env(document, source), stages=stages)


def _from_workflow(document: dict[str, Any], source: str) -> LoadedConfig:
    jobs = document.get("jobs")
    if not isinstance(jobs, dict):
        raise ConfigError(f"{source}: 'jobs' must be a mapping")
    stages = []
    for job_id, job in jobs.items():
        if not isinstance(job, dict):
            raise ConfigError(f"{source}: job must be a mapping", stage=str(job_id))
        stages.append(_build_stage(_job_to_stage(str(job_id), job, source), source))
    return LoadedConfig(source=source, ambient_env=_ambient_env(document, source), stages=stages)


def _job_to_stage(job_id: str, job: dict[str, Any], source: str) -> dict[str, Any]:
    if job.get("needs"):
        logger.warning("Job %s declares 'needs'; stages run independently", job_id)
    definition: dict[str, Any] = {"name": job_id, "title": job.get("name")}
    env = _section_env(job.get("env"), job_id, "job env")
    command: list[str] | None = None
    steps = job.get("steps") or []
    if not isinstance(steps, list):
        raise ConfigError(f"{source}: 'steps' must be a list", stage=job_id)

    for step in steps:
        if not isinstance(step, dict):
            raise ConfigError(f"{source}: every step must be a mapping", stage=job_id)
        step_command = None
        if "run" in step:
            step_command = _split_run(str(step["run"]), job_id)
        elif "uses" in step:
            action, _, ref = str(step["uses"]).partition("@")
            inputs = step.get("with") or {}
            if not isinstance(inputs, dict):
                raise ConfigError(f"{source}: step 'with' must be a mapping", stage=job_id)
            if action in IGNORED_ACTIONS:
                continue
            if action in TOOLCHAIN_ACTIONS:
                definition["toolchain"] = str(inputs.get("toolchain") or ref)
                continue
            builder = COMMAND_ACTIONS.get(action)
            if builder is None:
                raise ConfigError(f"Unsupported action {action!r}", stage=job_id)
            try:
                step_command = builder(inputs)
            except ValueError as exc:
                raise ConfigError(
                    f"Cannot build command for {action!r}: {exc}", stage=job_id
                ) from exc
        if step_command is None:
            continue
        if command is not None:
            raise ConfigError("Job runs more than one command step", stage=job_id)
        command = step_command
        env.update(_section_env(step.get("env"), job_id, "step env"))
        if step.get("working-directory"):
            definition["working_directory"] = str(step["working-directory"])

    if command is None:
        raise ConfigError("Job has no command step", stage=job_id)
    definition["command"] = command
    definition["env"] = env
    return definition


def _section_env(value: Any, job_id: str, section: str) -> dict[str, str]:
    try:
        return coerce_env(value)
    except ValueError as exc:
        raise ConfigError(f"{section} is invalid: {exc}", stage=job_id) from exc


def _split_run(script: str, job_id: str) -> list[str]:
    lines = [line for line in script.splitlines() if line.strip()]
    if len(lines) != 1:
        raise ConfigError("Only single-line run steps are supported", stage=job_id)
    try:
        return shlex.split(lines[0])
    except ValueError as exc:
        raise ConfigError(f"Cannot parse run step: {exc}", stage=job_id) from exc
