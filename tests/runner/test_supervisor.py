from __future__ import annotations

import logging
import shlex
import sys
from pathlib import Path

import pytest

from e2e_harness.runner import (
    LaunchError,
    LogChunk,
    PortInUseError,
    ProcessState,
    ProcessSupervisor,
    SupervisorBusyError,
    UnexpectedExitError,
)

WAIT = 10


def test_start_reports_ready_and_logs_command(
    supervisor: ProcessSupervisor, make_config, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="e2e_harness.runner")
    config = make_config("svc", args=["-arg1", "val1", "-arg2", "val2"])
    handle = supervisor.start(config)
    handle.wait_ready(WAIT)
    assert handle.state is ProcessState.READY
    assert handle.pid is not None

    result = supervisor.stop(handle).result(WAIT)
    assert result.returncode == 0
    assert result.stages == ("SIGINT",)
    assert not result.forced
    assert handle.state is ProcessState.EXITED
    assert config.log_path.read_text() == "listening on port 3000\n"

    messages = [record.getMessage() for record in caplog.records]
    expected = shlex.join([sys.executable, "svc.py", "-arg1", "val1", "-arg2", "val2"])
    assert f"service started: {expected}" in messages
    assert "service termination ended OK" in messages


def test_stdout_chunks_are_logged_verbatim(supervisor: ProcessSupervisor, make_config) -> None:
    config = make_config("svc.py", args=["--chunks", "5"])
    handle = supervisor.start(config)
    handle.wait_ready(WAIT)
    supervisor.stop(handle).result(WAIT)
    expected = "".join(f"chunk {index}\n" for index in range(5)) + "listening on port 3000\n"
    assert config.log_path.read_text() == expected


def test_stream_observers_receive_output(supervisor: ProcessSupervisor, make_config) -> None:
    received: list[LogChunk] = []
    handle = supervisor.start(make_config("svc"), stream_observers=[received.append])
    handle.wait_ready(WAIT)
    supervisor.stop(handle).result(WAIT)
    assert "".join(chunk.text for chunk in received) == "listening on port 3000\n"


def test_stderr_is_prefixed_and_early_exit_fails_start(
    supervisor: ProcessSupervisor, make_config, tmp_path: Path
) -> None:
    config = make_config("err", log_path=str(tmp_path / "err.log"))
    handle = supervisor.start(config)
    with pytest.raises(UnexpectedExitError) as excinfo:
        handle.wait_ready(WAIT)
    assert excinfo.value.returncode == 3
    result = handle.stopped.result(WAIT)
    assert result.stages == ()
    assert handle.state is ProcessState.EXITED
    assert config.log_path.read_text() == "ERR: oups\n"


def test_address_in_use_is_a_distinct_failure(
    supervisor: ProcessSupervisor, make_config, tmp_path: Path
) -> None:
    config = make_config("addr_in_use", log_path=str(tmp_path / "addr.log"))
    handle = supervisor.start(config)
    with pytest.raises(PortInUseError):
        handle.wait_ready(WAIT)
    assert not isinstance(handle.ready.exception(), LaunchError)
    assert handle.state is ProcessState.FAILED

    result = supervisor.stop(handle).result(WAIT)
    assert result.stages == ("SIGINT",)
    log = config.log_path.read_text()
    assert "ERR: " in log
    assert "Address already in use" in log


def test_spawn_failure_reports_launch_error(supervisor: ProcessSupervisor, make_config) -> None:
    config = make_config("svc", interpreter="/definitely/not/a/real/binary")
    handle = supervisor.start(config)
    with pytest.raises(LaunchError):
        handle.wait_ready(WAIT)
    assert handle.state is ProcessState.FAILED
    stopped = supervisor.stop(handle)
    assert stopped.done()
    assert stopped.result().returncode is None
    assert config.log_path.read_text().startswith("ERR: Failed to start service")


def test_stop_before_ready_still_completes(supervisor: ProcessSupervisor, make_config) -> None:
    handle = supervisor.start(make_config("svc", args=["--no-ready"]))
    result = supervisor.stop(handle).result(WAIT)
    assert handle.state is ProcessState.EXITED
    assert isinstance(handle.ready.exception(), UnexpectedExitError)
    assert not result.forced


def test_second_stop_is_an_immediate_no_op(supervisor: ProcessSupervisor, make_config) -> None:
    handle = supervisor.start(make_config("svc"))
    handle.wait_ready(WAIT)
    first = supervisor.stop(handle)
    first.result(WAIT)
    second = supervisor.stop(handle)
    assert second is first
    assert second.done()


def test_slow_exit_after_soft_signal_is_not_killed(
    supervisor: ProcessSupervisor, make_config
) -> None:
    config = make_config("svc", args=["--signal-exit-delay", "0.3"], term_timeout=1.0)
    handle = supervisor.start(config)
    handle.wait_ready(WAIT)
    result = supervisor.stop(handle).result(WAIT)
    assert result.stages == ("SIGINT",)
    assert result.returncode == 0
    assert not result.forced
    assert result.elapsed >= 0.3
    assert handle._record.timers == []


def test_unresponsive_service_is_killed_after_two_timeouts(
    supervisor: ProcessSupervisor, make_config
) -> None:
    config = make_config(
        "svc",
        args=["--ignore-signals"],
        term_timeout=0.3,
        term_ipc={"action": "ignore"},
    )
    handle = supervisor.start(config)
    handle.wait_ready(WAIT)
    result = supervisor.stop(handle).result(WAIT)
    assert result.stages == ("message", "SIGINT", "SIGKILL")
    assert result.forced
    assert result.returncode == -9
    assert result.elapsed >= 0.6
    assert 'control message: {"action": "ignore"}' in config.log_path.read_text()


def test_termination_message_lets_service_exit_on_its_own(
    supervisor: ProcessSupervisor, make_config
) -> None:
    config = make_config("svc", term_timeout=2.0, term_ipc={"action": "die", "timeout": 0.1})
    handle = supervisor.start(config)
    handle.wait_ready(WAIT)
    result = supervisor.stop(handle).result(WAIT)
    assert result.stages == ("message",)
    assert result.returncode == 0
    assert result.elapsed < 2.0


def test_configured_termination_signal_is_used(supervisor: ProcessSupervisor, make_config) -> None:
    handle = supervisor.start(make_config("svc", term_code="SIGTERM"))
    handle.wait_ready(WAIT)
    result = supervisor.stop(handle).result(WAIT)
    assert result.stages == ("SIGTERM",)


def test_environment_overrides_reach_the_service(
    supervisor: ProcessSupervisor, make_config
) -> None:
    config = make_config("env", env={"THE_VAR": "correct-value"})
    handle = supervisor.start(config)
    handle.wait_ready(WAIT)
    supervisor.stop(handle).result(WAIT)
    assert "the env var: correct-value" in config.log_path.read_text()


def test_one_live_service_per_supervisor(supervisor: ProcessSupervisor, make_config) -> None:
    config = make_config("svc")
    handle = supervisor.start(config)
    handle.wait_ready(WAIT)
    with pytest.raises(SupervisorBusyError):
        supervisor.start(config)
    supervisor.stop(handle).result(WAIT)

    again = supervisor.start(config)
    again.wait_ready(WAIT)
    supervisor.stop(again).result(WAIT)
    assert config.log_path.read_text() == "listening on port 3000\n"


def test_handles_are_bound_to_their_supervisor(
    supervisor: ProcessSupervisor, make_config
) -> None:
    handle = supervisor.start(make_config("svc"))
    with pytest.raises(ValueError):
        ProcessSupervisor().stop(handle)


def test_undeliverable_termination_message_still_escalates(
    supervisor: ProcessSupervisor, make_config
) -> None:
    config = make_config("env", term_timeout=0.3, term_ipc="x" * 200_000)
    handle = supervisor.start(config)
    handle.wait_ready(WAIT)
    result = supervisor.stop(handle).result(WAIT)
    assert result.stages == ("message", "SIGINT")
    assert result.returncode == 0
    assert not result.forced
    assert result.elapsed >= 0.3
