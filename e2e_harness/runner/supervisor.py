"""Process supervisor: launches a service, waits for it, and shuts it down."""

from __future__ import annotations

import codecs
import contextlib
import enum
import logging
import os
import queue
import shlex
import subprocess
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import IO

from e2e_harness.runner.channel import ControlChannel
from e2e_harness.runner.config import LaunchConfig, TerminationSignal
from e2e_harness.runner.log_stream import LogChunk, LogStream

__all__ = [
    "ADDRESS_IN_USE_MARKERS",
    "DataChunk",
    "Exited",
    "LaunchError",
    "PortInUseError",
    "ProcessState",
    "ProcessSupervisor",
    "ServiceHandle",
    "StartError",
    "StopResult",
    "SupervisedProcess",
    "SupervisorBusyError",
    "UnexpectedExitError",
]

ADDRESS_IN_USE_MARKERS = ("Address already in use", "EADDRINUSE")
_CHUNK_SIZE = 64 * 1024
_PUMP_DRAIN_TIMEOUT = 1.0
_MESSAGE_STAGE = "message"


class ProcessState(str, enum.Enum):
    """Lifecycle states of a supervised process."""

    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    TERMINATING = "terminating"
    EXITED = "exited"


class StartError(RuntimeError):
    """Base class for failures reported through ``ServiceHandle.ready``."""


class LaunchError(StartError):
    """Raised when the OS could not spawn the service."""


class PortInUseError(StartError):
    """Raised when the service reports that its address is already bound."""


class UnexpectedExitError(StartError):
    """Raised when the service exits before signalling readiness."""

    def __init__(self, returncode: int | None) -> None:
        super().__init__(f"Service exited before it was ready (exit code {returncode})")
        self.returncode = returncode


class SupervisorBusyError(RuntimeError):
    """Raised when a supervisor is asked to start a second live process."""


@dataclass(frozen=True, slots=True)
class DataChunk:
    """Decoded output read from one of the service's streams."""

    stream: str
    text: str


@dataclass(frozen=True, slots=True)
class Exited:
    """The OS reported that the service process ended."""

    returncode: int | None


@dataclass(frozen=True, slots=True)
class _StopRequested:
    pass


@dataclass(frozen=True, slots=True)
class _Escalate:
    stage: str


@dataclass(frozen=True, slots=True)
class StopResult:
    """Outcome of the termination protocol."""

    returncode: int | None
    stages: tuple[str, ...]
    elapsed: float

    @property
    def forced(self) -> bool:
        return TerminationSignal.KILL.value in self.stages


@dataclass(slots=True, eq=False)
class SupervisedProcess:
    """Mutable state of one supervised process.

    Only the supervisor's dispatcher thread mutates ``state``, ``stages`` and
    ``timers`` once the process is running.
    """

    config: LaunchConfig
    log_sink: LogStream
    process: subprocess.Popen[bytes] | None = None
    control: ControlChannel | None = None
    state: ProcessState = ProcessState.STARTING
    exit_observed: bool = False
    timers: list[threading.Timer] = field(default_factory=list)
    stages: list[str] = field(default_factory=list)
    stop_requested_at: float | None = None
    events: queue.Queue[object] = field(default_factory=queue.Queue)
    ready: Future[None] = field(default_factory=Future)
    stopped: Future[StopResult] = field(default_factory=Future)


class ServiceHandle:
    """Caller-facing reference to a started service, passed back to ``stop``."""

    def __init__(self, supervisor: ProcessSupervisor, record: SupervisedProcess) -> None:
        self._supervisor = supervisor
        self._record = record

    def __repr__(self) -> str:
        return f"<ServiceHandle pid={self.pid} state={self.state.value}>"

    @property
    def config(self) -> LaunchConfig:
        return self._record.config

    @property
    def state(self) -> ProcessState:
        return self._record.state

    @property
    def pid(self) -> int | None:
        process = self._record.process
        return process.pid if process is not None else None

    @property
    def log_path(self) -> Path:
        return self._record.log_sink.path

    @property
    def ready(self) -> Future[None]:
        return self._record.ready

    @property
    def stopped(self) -> Future[StopResult]:
        return self._record.stopped

    def wait_ready(self, timeout: float | None = None) -> None:
        """Block until the service is ready; re-raise its start failure otherwise."""

        self._record.ready.result(timeout)

    def stop(self) -> Future[StopResult]:
        return self._supervisor.stop(self)


class ProcessSupervisor:
    """Owns at most one live service process at a time."""

    def __init__(
        self,
        *,
        logger: logging.Logger | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger("e2e_harness.runner")
        self.base_env = dict(os.environ if base_env is None else base_env)
        self._current: SupervisedProcess | None = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        current = self._current
        return current is not None and not current.stopped.done()

    def start(
        self,
        config: LaunchConfig,
        *,
        stream_observers: Iterable[Callable[[LogChunk], None]] | None = None,
    ) -> ServiceHandle:
        """Spawn the service described by ``config``.

        Returns immediately; ``handle.ready`` completes once the readiness
        marker is seen or with a ``StartError`` subclass.
        """

        with self._lock:
            if self.active:
                raise SupervisorBusyError("Supervisor already owns a running service")
            record = SupervisedProcess(config=config, log_sink=LogStream(config.log_path))
            self._current = record
        for observer in stream_observers or []:
            record.log_sink.add_listener(observer)
        handle = ServiceHandle(self, record)

        control = ControlChannel()
        try:
            process = subprocess.Popen(  # noqa: S603
                list(config.argv),
                cwd=str(config.working_directory),
                env=self._build_env(config, control),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                pass_fds=(control.child_fd,),
            )
        except OSError as exc:
            control.close()
            self._fail_launch(record, exc)
            return handle

        control.detach_child()
        record.process = process
        record.control = control
        pumps = [
            self._spawn_thread(self._pump, record, process.stdout, "stdout"),
            self._spawn_thread(self._pump, record, process.stderr, "stderr"),
        ]
        self._spawn_thread(self._watch_exit, record, pumps)
        self._spawn_thread(self._dispatch, record)
        return handle

    def stop(self, handle: ServiceHandle) -> Future[StopResult]:
        """Run the termination protocol; the future resolves after the log is closed."""

        if handle._supervisor is not self:
            raise ValueError("Handle belongs to a different supervisor")
        record = handle._record
        if record.stopped.done():
            return record.stopped
        if record.stop_requested_at is None:
            record.stop_requested_at = time.monotonic()
        record.events.put(_StopRequested())
        return record.stopped

    # ------------------------------------------------------------------ threads
    def _spawn_thread(self, target, *args) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        return thread

    def _pump(self, record: SupervisedProcess, pipe: IO[bytes], label: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        with pipe:
            for data in iter(partial(pipe.read1, _CHUNK_SIZE), b""):
                text = decoder.decode(data)
                if text:
                    record.events.put(DataChunk(label, text))
        tail = decoder.decode(b"", final=True)
        if tail:
            record.events.put(DataChunk(label, tail))

    def _watch_exit(self, record: SupervisedProcess, pumps: list[threading.Thread]) -> None:
        assert record.process is not None
        returncode = record.process.wait()
        # pipes may be held open by grandchildren, so do not wait forever
        for pump in pumps:
            pump.join(_PUMP_DRAIN_TIMEOUT)
        record.events.put(Exited(returncode))

    def _dispatch(self, record: SupervisedProcess) -> None:
        while True:
            event = record.events.get()
            try:
                if isinstance(event, DataChunk):
                    self._on_data(record, event)
                elif isinstance(event, _StopRequested):
                    self._on_stop_requested(record)
                elif isinstance(event, _Escalate):
                    self._on_escalate(record, event)
                elif isinstance(event, Exited):
                    self._on_exit(record, event)
                    return
            except Exception as exc:
                self.logger.exception("error handling %r", event)
                if isinstance(event, Exited):
                    if not record.stopped.done():
                        record.stopped.set_exception(exc)
                    return

    # ----------------------------------------------------------------- handlers
    def _on_data(self, record: SupervisedProcess, chunk: DataChunk) -> None:
        record.log_sink.write(chunk.text, stream=chunk.stream)
        if record.state is not ProcessState.STARTING:
            return
        if chunk.stream == "stdout" and record.config.readiness_marker in chunk.text:
            record.state = ProcessState.READY
            self.logger.info("service started: %s", shlex.join(record.config.argv))
            record.ready.set_result(None)
        elif chunk.stream == "stderr" and any(m in chunk.text for m in ADDRESS_IN_USE_MARKERS):
            record.state = ProcessState.FAILED
            record.ready.set_exception(PortInUseError("Server could not start: Address In Use"))

    def _on_stop_requested(self, record: SupervisedProcess) -> None:
        if record.exit_observed or record.state is ProcessState.TERMINATING:
            return
        record.state = ProcessState.TERMINATING
        message = record.config.pre_termination_message
        if message is None:
            self._send_signal(record)
            return
        assert record.control is not None
        record.stages.append(_MESSAGE_STAGE)
        self.logger.info("sending termination message to service: %r", message)
        if not record.control.send(message):
            self.logger.warning("termination message was not delivered; escalating on schedule")
        self._schedule(record, "signal")

    def _on_escalate(self, record: SupervisedProcess, event: _Escalate) -> None:
        if record.exit_observed:
            return
        if event.stage == "signal":
            self._send_signal(record)
        else:
            self._kill(record)

    def _on_exit(self, record: SupervisedProcess, event: Exited) -> None:
        record.exit_observed = True
        for timer in record.timers:
            timer.cancel()
        record.timers.clear()
        record.state = ProcessState.EXITED
        self.logger.info("service termination ended %s", event.returncode or "OK")
        record.log_sink.writable = False
        record.log_sink.close()
        if record.control is not None:
            record.control.close()
        if record.process is not None and record.process.stdin is not None:
            with contextlib.suppress(OSError):
                record.process.stdin.close()
        if not record.ready.done():
            record.ready.set_exception(UnexpectedExitError(event.returncode))
        elapsed = 0.0
        if record.stop_requested_at is not None:
            elapsed = time.monotonic() - record.stop_requested_at
        record.stopped.set_result(
            StopResult(returncode=event.returncode, stages=tuple(record.stages), elapsed=elapsed)
        )

    # ------------------------------------------------------------------ helpers
    def _send_signal(self, record: SupervisedProcess) -> None:
        assert record.process is not None
        signal_name = record.config.termination_signal
        record.stages.append(signal_name.value)
        self.logger.info("sending %s to service (pid %s)", signal_name.value, record.process.pid)
        try:
            record.process.send_signal(signal_name.signum)
        except ProcessLookupError:
            self.logger.debug("service already gone before %s", signal_name.value)
        self._schedule(record, "kill")

    def _kill(self, record: SupervisedProcess) -> None:
        assert record.process is not None
        record.stages.append(TerminationSignal.KILL.value)
        self.logger.info("killing service (pid %s)", record.process.pid)
        try:
            record.process.kill()
        except ProcessLookupError:
            self.logger.debug("service already gone before SIGKILL")

    def _schedule(self, record: SupervisedProcess, stage: str) -> None:
        timer = threading.Timer(
            record.config.termination_timeout,
            record.events.put,
            args=(_Escalate(stage),),
        )
        timer.daemon = True
        record.timers.append(timer)
        timer.start()

    def _fail_launch(self, record: SupervisedProcess, exc: OSError) -> None:
        record.log_sink.write(f"Failed to start service: {exc}\n", stream="stderr")
        record.log_sink.close()
        record.state = ProcessState.FAILED
        record.exit_observed = True
        record.ready.set_exception(LaunchError(str(exc)))
        record.stopped.set_result(StopResult(returncode=None, stages=(), elapsed=0.0))

    def _build_env(self, config: LaunchConfig, control: ControlChannel) -> dict[str, str]:
        env: dict[str, str] = dict(self.base_env)
        env.update(config.environment)
        env.update(control.environment())
        env.setdefault("PYTHONUNBUFFERED", "1")
        return env
