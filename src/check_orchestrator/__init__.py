from .errors import Cancelled, ConfigError, OrchestratorError, ProcessSpawnError, ToolchainError
from .models import FailureKind, Run, RunResult, Stage, StageResult, StageStatus
from .orchestrator import CheckOrchestrator, configure
from .reporting import render_report as report

__all__ = [
    "Cancelled",
    "CheckOrchestrator",
    "ConfigError",
    "FailureKind",
    "OrchestratorError",
    "ProcessSpawnError",
    "Run",
    "RunResult",
    "Stage",
    "StageResult",
    "StageStatus",
    "ToolchainError",
    "configure",
    "report",
]
