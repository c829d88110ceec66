import asyncio
import os
import signal
import sys
import threading
import time

import pytest

from check_orchestrator.errors import Cancelled, ConfigError
from check_orchestrator.models import FailureKind, Stage
from check_orchestrator.orchestrator import CheckOrchestrator, configure, select_stages
from check_orchestrator.runner import StageRunner
from check_orchestrator.toolchain import ToolchainResolver

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")


@pytest.fixture
def four_stages(python_stage):
    return [
        python_stage("formatting", "print('formatted')"),
        python_stage(
            "linting",
            "import sys; sys.stderr.write('warning: unused variable x\\n'); sys.exit(1)",
        ),
        python_stage("udeps", "print('unused dependency: serde'); raise SystemExit(2)"),
        python_stage("test", "print('test result: ok. 12 passed')"),
    ]


def test_configure_rejects_duplicate_names(monkeypatch):
    def forbid_spawn(*args, **kwargs):
        raise AssertionError("no process may be spawned")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", forbid_spawn)
    stages = [
        Stage(name="test", command=["cargo", "test"]),
        Stage(name="test", command=["cargo", "test", "--release"]),
    ]

    with pytest.raises(ConfigError) as excinfo:
        configure({}, stages)

    assert "test" in str(excinfo.value)


def test_configure_rejects_empty_command_and_empty_stage_set():
    with pytest.raises(ConfigError) as excinfo:
        configure({}, [Stage(name="formatting", command=[])])
    assert excinfo.value.stage == "formatting"

    with pytest.raises(ConfigError):
        configure({}, [])


def test_configure_accepts_mappings_and_wraps_validation_errors():
    run = configure(
        {"TERM_COLOR": "always", "DEV_MODE": 1},
        [{"name": "formatting", "command": ["fmt", "--check"]}],
    )
    assert run.stage_names() == ["formatting"]
    assert run.ambient_env == {"TERM_COLOR": "always", "DEV_MODE": "1"}

    with pytest.raises(ConfigError):
        configure({}, [{"name": "test", "command": ["test"], "image": "ubuntu"}])


def test_select_stages_filters_and_rejects_unknown_names():
    run = configure(
        {},
        [Stage(name="formatting", command=["fmt"]), Stage(name="test", command=["test"])],
    )
    assert select_stages(run, ["test"]).stage_names() == ["test"]
    assert select_stages(run, []).stage_names() == ["formatting", "test"]
    with pytest.raises(ConfigError):
        select_stages(run, ["udeps"])


def test_execute_runs_every_stage_and_reports_all_failures(settings, four_stages):
    orchestrator = CheckOrchestrator(settings)
    run = orchestrator.configure({"LOG_LEVEL": "trace"}, four_stages)

    result = orchestrator.execute(run)

    assert [r.stage for r in result.stage_results] == ["formatting", "linting", "udeps", "test"]
    assert result.success is False
    assert result.failing_stages == ["linting", "udeps"]
    assert result.get("linting").exit_code == 1
    assert result.get("udeps").exit_code == 2
    assert result.get("linting").failure_kind is FailureKind.EXIT
    assert "warning: unused variable x" in result.get("linting").output
    assert "unused dependency: serde" in result.get("udeps").output

    report = orchestrator.report(result)
    assert "warning: unused variable x" in report
    assert "unused dependency: serde" in report
    assert "[PASS] formatting" in report
    assert "[PASS] test" in report


def test_execute_all_passing(settings, python_stage):
    orchestrator = CheckOrchestrator(settings)
    run = orchestrator.configure(
        {}, [python_stage(name, "pass") for name in ("formatting", "linting", "udeps", "test")]
    )

    result = orchestrator.execute(run)

    assert result.success is True
    assert result.failing_stages == []
    assert len(result.stage_results) == 4


def test_stage_environments_do_not_leak(settings, python_stage):
    code = "import os; print(os.environ.get('SHARED'), os.environ.get('ONLY_A'), os.environ['LOG_LEVEL'])"
    orchestrator = CheckOrchestrator(settings)
    run = orchestrator.configure(
        {"SHARED": "ambient", "LOG_LEVEL": "trace"},
        [
            python_stage("a", code, env={"SHARED": "from-a", "ONLY_A": "yes"}),
            python_stage("b", code, env={"SHARED": "from-b"}),
            python_stage("c", code),
        ],
    )

    result = orchestrator.execute(run)

    assert result.get("a").output.strip() == "from-a yes trace"
    assert result.get("b").output.strip() == "from-b None trace"
    assert result.get("c").output.strip() == "ambient None trace"


def test_missing_binary_is_localized_to_its_stage(settings, python_stage):
    orchestrator = CheckOrchestrator(settings)
    run = orchestrator.configure(
        {},
        [
            Stage(name="udeps", command=["definitely-not-a-real-binary-7f3a", "--workspace"]),
            python_stage("test", "print('ok')"),
        ],
    )

    result = orchestrator.execute(run)

    udeps = result.get("udeps")
    assert udeps.success is False
    assert udeps.failure_kind is FailureKind.SPAWN
    assert udeps.exit_code is None
    assert "definitely-not-a-real-binary-7f3a" in udeps.error
    assert result.get("test").success is True
    assert result.failing_stages == ["udeps"]


def test_toolchain_resolution(settings, python_stage):
    probe = [
        sys.executable,
        "-c",
        "import sys; print('no such toolchain'); sys.exit(0 if sys.argv[1] == 'stable' else 1)",
        "{toolchain}",
    ]
    launcher = [
        sys.executable,
        "-c",
        "import sys; print('using', sys.argv[1], 'for', ' '.join(sys.argv[2:]))",
        "{toolchain}",
    ]
    runner = StageRunner(ToolchainResolver(probe=probe, launcher=launcher, kill_grace_seconds=1))
    orchestrator = CheckOrchestrator(settings, runner=runner)
    run = orchestrator.configure(
        {},
        [
            Stage(name="test", command=["cargo", "test"], toolchain="stable"),
            Stage(name="udeps", command=["cargo", "udeps"], toolchain="nightly-2024-07-27"),
            python_stage("formatting", "print('fmt ok')"),
        ],
    )

    result = orchestrator.execute(run)

    assert result.get("test").success is True
    assert result.get("test").output.strip() == "using stable for cargo test"
    udeps = result.get("udeps")
    assert udeps.failure_kind is FailureKind.TOOLCHAIN
    assert "nightly-2024-07-27" in udeps.error
    assert result.get("formatting").success is True
    assert result.failing_stages == ["udeps"]


@pytest.mark.asyncio
async def test_parallel_limit_still_runs_every_stage(settings, python_stage):
    orchestrator = CheckOrchestrator(settings, max_parallel=1)
    run = configure({}, [python_stage(f"stage-{i}", f"print({i})") for i in range(3)])

    result = await orchestrator.execute_async(run)

    assert [r.output.strip() for r in result.stage_results] == ["0", "1", "2"]


async def _wait_for_pid(path) -> int:
    for _ in range(400):
        if path.exists():
            text = path.read_text().strip()
            if text:
                return int(text)
        await asyncio.sleep(0.025)
    raise AssertionError("child process never started")


@posix_only
@pytest.mark.asyncio
async def test_cancel_terminates_children_and_yields_no_result(settings, python_stage, tmp_path):
    pid_file = tmp_path / "pid"
    sleeper = (
        "import os, pathlib, time; "
        f"pathlib.Path({str(pid_file)!r}).write_text(str(os.getpid())); "
        "time.sleep(60)"
    )
    orchestrator = CheckOrchestrator(settings)
    run = configure({}, [python_stage("slow", sleeper), python_stage("fast", "pass")])

    task = asyncio.create_task(orchestrator.execute_async(run))
    pid = await _wait_for_pid(pid_file)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@posix_only
def test_deadline_expiry_raises_cancelled(settings, python_stage):
    orchestrator = CheckOrchestrator(settings)
    run = configure({}, [python_stage("slow", "import time; time.sleep(60)")])

    with pytest.raises(Cancelled):
        orchestrator.execute(run, timeout=0.5)


def test_negative_parallel_limit_and_non_positive_timeout_are_rejected(settings, python_stage):
    with pytest.raises(ConfigError):
        CheckOrchestrator(settings, max_parallel=-1)

    orchestrator = CheckOrchestrator(settings)
    run = configure({}, [python_stage("test", "pass")])
    for timeout in (0, -5):
        with pytest.raises(ConfigError):
            orchestrator.execute(run, timeout=timeout)


STUBBORN_GRANDCHILD = (
    "import os, pathlib, signal, sys, time; "
    "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "pathlib.Path(sys.argv[1]).write_text(str(os.getpid())); "
    "time.sleep(60)"
)

STUBBORN_CHILD = (
    "import os, pathlib, signal, subprocess, sys, time; "
    "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "subprocess.Popen([sys.executable, '-c', sys.argv[3], sys.argv[2]]); "
    "pathlib.Path(sys.argv[1]).write_text(str(os.getpid())); "
    "time.sleep(60)"
)


def _read_pid(path, deadline):
    while time.monotonic() < deadline:
        if path.exists():
            text = path.read_text().strip()
            if text:
                return int(text)
        time.sleep(0.025)
    raise AssertionError(f"{path.name} was never written")


def _process_gone(pid, timeout=5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            with open(f"/proc/{pid}/stat", encoding="utf-8") as stat:
                if stat.read().rsplit(")", 1)[1].split()[0] == "Z":
                    return True
        except OSError:
            pass
        time.sleep(0.05)
    return False


@posix_only
@pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
def test_signal_cancels_run_and_kills_stubborn_process_group(settings, tmp_path, signum):
    child_pid_file = tmp_path / "child.pid"
    grandchild_pid_file = tmp_path / "grandchild.pid"
    stage = Stage(
        name="udeps",
        command=[
            sys.executable,
            "-c",
            STUBBORN_CHILD,
            str(child_pid_file),
            str(grandchild_pid_file),
            STUBBORN_GRANDCHILD,
        ],
    )
    orchestrator = CheckOrchestrator(settings)
    run = configure({}, [stage])
    pids = {}

    def send_signal_once_started():
        deadline = time.monotonic() + 10
        pids["child"] = _read_pid(child_pid_file, deadline)
        pids["grandchild"] = _read_pid(grandchild_pid_file, deadline)
        os.kill(os.getpid(), signum)

    sender = threading.Thread(target=send_signal_once_started, daemon=True)
    sender.start()
    with pytest.raises(Cancelled):
        orchestrator.execute(run)
    sender.join(timeout=5)

    assert _process_gone(pids["child"])
    assert _process_gone(pids["grandchild"])
