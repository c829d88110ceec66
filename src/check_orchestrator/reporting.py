from __future__ import annotations

from pathlib import Path

from check_orchestrator.models import FailureKind, RunResult, StageResult

PASS_MARK = "PASS"
FAIL_MARK = "FAIL"
RULE = "-" * 60


def _describe_failure(result: StageResult) -> str:
    if result.failure_kind is FailureKind.TOOLCHAIN:
        return "toolchain unavailable"
    if result.failure_kind is FailureKind.SPAWN:
        return "could not be launched"
    if result.exit_code is not None and result.exit_code < 0:
        return f"killed by signal {-result.exit_code}"
    return f"exit code {result.exit_code}"


def _status_line(result: StageResult) -> str:
    duration = f"{result.duration_seconds:.1f}s"
    if result.success:
        return f"[{PASS_MARK}] {result.stage} ({duration})"
    return f"[{FAIL_MARK}] {result.stage} ({_describe_failure(result)}, {duration})"


def render_report(result: RunResult) -> str:
    lines = ["Stages:"]
    lines.extend(f"  {_status_line(stage_result)}" for stage_result in result.stage_results)

    for failure in result.failures:
        lines.append("")
        lines.append(RULE)
        lines.append(f"{failure.stage}: {_describe_failure(failure)}")
        if failure.error:
            lines.append(f"Error: {failure.error}")
        lines.append(RULE)
        lines.append(failure.output.rstrip("\n") if failure.output else "(no output captured)")

    total = len(result.stage_results)
    failed = len(result.failing_stages)
    lines.append("")
    if result.success:
        lines.append(f"Result: success ({total}/{total} stages passed)")
    else:
        lines.append(
            f"Result: failure ({failed} of {total} stages failed: "
            + ", ".join(result.failing_stages)
            + ")"
        )
    return "\n".join(lines)


def write_json_report(result: RunResult, path: str | Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(result.model_dump_json(indent=2), encoding="utf-8")
    return target
