from __future__ import annotations


class OrchestratorError(Exception):
    def __init__(self, message: str, *, stage: str | None = None) -> None:
        self.message = message
        self.stage = stage
        super().__init__(message)

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ConfigError(OrchestratorError):
    """Invalid stage configuration. Raised before any process is spawned."""


class ToolchainError(OrchestratorError):
    """A stage's toolchain selector could not be resolved."""


class ProcessSpawnError(OrchestratorError):
    """A stage's command could not be launched at all."""


class Cancelled(OrchestratorError):
    """The run was interrupted before every stage finished."""
