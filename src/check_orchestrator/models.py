from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_serializer,
    field_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stringify_env_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def coerce_env(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError("environment must be a mapping of names to values")
    return {str(key): _stringify_env_value(item) for key, item in value.items()}


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class FailureKind(str, Enum):
    EXIT = "exit"
    TOOLCHAIN = "toolchain"
    SPAWN = "spawn"


class Stage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    command: tuple[str, ...]
    env: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    toolchain: str | None = None
    title: str | None = None
    working_directory: str | None = None

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        if isinstance(value, (list, tuple)):
            return [_stringify_env_value(part) for part in value]
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> dict[str, str]:
        return coerce_env(value)

    @field_validator("env")
    @classmethod
    def _freeze_env(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return MappingProxyType(dict(value))

    @field_serializer("env")
    def _dump_env(self, value: Mapping[str, str]) -> dict[str, str]:
        return dict(value)

    @field_validator("toolchain", "title", "working_directory", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def label(self) -> str:
        return self.title or self.name


class Run(BaseModel):
    model_config = ConfigDict(frozen=True)

    stages: tuple[Stage, ...]
    ambient_env: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    working_directory: str = Field(default_factory=os.getcwd)
    started_at: datetime = Field(default_factory=utcnow)

    @field_validator("ambient_env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> dict[str, str]:
        return coerce_env(value)

    @field_validator("ambient_env")
    @classmethod
    def _freeze_env(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return MappingProxyType(dict(value))

    @field_serializer("ambient_env")
    def _dump_env(self, value: Mapping[str, str]) -> dict[str, str]:
        return dict(value)

    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def environment_for(
        self, stage: Stage, base: Mapping[str, str] | None = None
    ) -> dict[str, str]:
        """Return a fresh environment: base, then ambient, then the stage's own overrides."""
        environment = dict(base or {})
        environment.update(self.ambient_env)
        environment.update(stage.env)
        return environment

    def directory_for(self, stage: Stage) -> str:
        if stage.working_directory is None:
            return self.working_directory
        return os.path.join(self.working_directory, stage.working_directory)


class StageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    status: StageStatus
    exit_code: int | None = None
    output: str = ""
    failure_kind: FailureKind | None = None
    error: str | None = None
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return self.status is StageStatus.SUCCESS

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_seconds(self) -> float:
        return max((self.finished_at - self.started_at).total_seconds(), 0.0)


class RunResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage_results: tuple[StageResult, ...]
    started_at: datetime
    finished_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return all(result.success for result in self.stage_results)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failing_stages(self) -> list[str]:
        return [result.stage for result in self.stage_results if not result.success]

    @property
    def failures(self) -> list[StageResult]:
        return [result for result in self.stage_results if not result.success]

    def get(self, stage: str) -> StageResult | None:
        for result in self.stage_results:
            if result.stage == stage:
                return result
        return None
