"""Launch configuration, process supervisor, and log capture helpers."""

from .channel import CONTROL_FD_ENV, ControlChannel, iter_control_messages, listen
from .config import (
    DEFAULT_OPTIONS,
    ConfigurationError,
    LaunchConfig,
    TerminationSignal,
    load_launch_config,
    validate,
)
from .log_stream import STDERR_PREFIX, LogChunk, LogStream
from .supervisor import (
    LaunchError,
    PortInUseError,
    ProcessState,
    ProcessSupervisor,
    ServiceHandle,
    StartError,
    StopResult,
    SupervisedProcess,
    SupervisorBusyError,
    UnexpectedExitError,
)

__all__ = [
    "CONTROL_FD_ENV",
    "DEFAULT_OPTIONS",
    "ConfigurationError",
    "ControlChannel",
    "LaunchConfig",
    "LaunchError",
    "LogChunk",
    "LogStream",
    "PortInUseError",
    "ProcessState",
    "ProcessSupervisor",
    "STDERR_PREFIX",
    "ServiceHandle",
    "StartError",
    "StopResult",
    "SupervisedProcess",
    "SupervisorBusyError",
    "TerminationSignal",
    "UnexpectedExitError",
    "iter_control_messages",
    "listen",
    "load_launch_config",
    "validate",
]
