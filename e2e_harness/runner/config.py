"""Validate and normalize the options describing how to launch a service."""

from __future__ import annotations

import enum
import json
import os
import signal
import sys
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

__all__ = [
    "ConfigurationError",
    "DEFAULT_OPTIONS",
    "LaunchConfig",
    "TerminationSignal",
    "load_launch_config",
    "validate",
]

_ENV_COVER = "COVER"
_SCRIPT_SUFFIX = ".py"
_COVER_IGNORE_FLAG = "-x"


class TerminationSignal(str, enum.Enum):
    """Signals a supervised service may be asked to terminate with."""

    INTERRUPT = "SIGINT"
    TERMINATE = "SIGTERM"
    QUIT = "SIGQUIT"
    KILL = "SIGKILL"
    HANGUP = "SIGHUP"

    @property
    def signum(self) -> signal.Signals:
        return signal.Signals[self.value]


def _default_cover_svc() -> str:
    return str(Path(sys.executable).parent / "coverage")


DEFAULT_OPTIONS: dict[str, Any] = {
    "env": {},
    "log_path": "./e2e.log",
    "ready_notice": "listening on port",
    "args": [],
    "timeout": 10.0,
    "slow": 5.0,
    "term_code": TerminationSignal.INTERRUPT.value,
    "term_timeout": 3.0,
    "term_ipc": None,
    "cover_args": ["run", "--parallel-mode"],
    "cover_ignore": [],
}

_USAGE = [
    "e2e-harness is expected to be called with valid options",
    "valid options should be a mapping with the following keys",
    "(or a string, see svc)",
    " - svc - string, mandatory, a path to the script that starts the service, relative to cwd.",
    "   when options is a string it is understood as options.svc, applying defaults to all the rest",
    " - cwd - string, optional - the directory the process should run in. defaults to current dir",
    " - log_path - string, optional - path to the log file. default: {log_path}",
    " - timeout - number, optional - seconds allowed for service setup. default: {timeout}",
    " - slow - number, optional - slow bar for service setup, in seconds. default: {slow}",
    " - ready_notice - string, optional - text expected on the service stdout that",
    "   indicates the service is ready. default: {ready_notice}",
    " - args - list of strings, optional - arguments appended to the service command",
    " - env - mapping, optional - variables added over the current environment",
    " - term_code - string, optional - the signal to terminate the service with. default: {term_code}",
    " - term_ipc - optional, any JSON value sent over the control channel before escalating",
    "   to term_code. when not provided, termination starts with term_code",
    " - term_timeout - number, optional - seconds between escalations (ipc -> term -> kill).",
    "   default: {term_timeout}",
    " - interpreter - string, optional - the executable that runs svc. default: the current python",
    " - cover_svc - string, optional - coverage CLI script that runs svc when COVER is set",
    " - cover_args - list of strings, optional - arguments to the coverage CLI. default: {cover_args}",
    " - cover_ignore - list of strings, optional - glob patterns excluded from coverage",
]


class ConfigurationError(ValueError):
    """Raised when launch options fail validation."""

    def __init__(self, reason: str, options: Any) -> None:
        usage = "\n".join(_USAGE).format(**{k: json.dumps(v) for k, v in DEFAULT_OPTIONS.items()})
        super().__init__(f"{usage}\nreason: \n  {reason}")
        self.reason = reason
        self.options = options


@dataclass(frozen=True, slots=True)
class LaunchConfig:
    """Validated, immutable description of how to start a service.

    ``start_timeout``, ``slow_threshold`` and ``termination_timeout`` are in
    seconds.
    """

    command: str
    working_directory: Path
    log_path: Path
    readiness_marker: str
    args: tuple[str, ...]
    interpreter: str
    environment: Mapping[str, str] = field(default_factory=dict)
    start_timeout: float = 10.0
    slow_threshold: float = 5.0
    termination_signal: TerminationSignal = TerminationSignal.INTERRUPT
    termination_timeout: float = 3.0
    pre_termination_message: Any = None
    coverage: bool = False

    @property
    def argv(self) -> tuple[str, ...]:
        return (self.interpreter, *self.args)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value)


def _is_json(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


def _resolve_script(cwd: str, svc: str) -> str | None:
    """Return ``svc`` as found under ``cwd``, trying the implied suffix second."""

    if (Path(cwd) / svc).exists():
        return svc
    if (Path(cwd) / (svc + _SCRIPT_SUFFIX)).exists():
        return svc + _SCRIPT_SUFFIX
    return None


def _first_violation(options: Mapping[str, Any]) -> str | None:
    svc = options.get("svc")
    cwd = options.get("cwd")
    env = options.get("env")
    if not svc:
        return "options.svc is not provided"
    if not isinstance(svc, str):
        return "options.svc must be a string"
    if not isinstance(cwd, str):
        return "options.cwd must be a string"
    if not os.path.exists(cwd):
        return f"{cwd} is not found on disk"
    if _resolve_script(cwd, svc) is None:
        return f"{svc} is not found on disk"
    if not options.get("log_path") or not isinstance(options["log_path"], str):
        return "options.log_path is expected to be a path"
    if not options.get("ready_notice") or not isinstance(options["ready_notice"], str):
        return "options.ready_notice must be a string"
    if not _is_string_list(options.get("args")):
        return "options.args must be a list of strings"
    if not _is_number(options.get("timeout")):
        return "options.timeout must be a number"
    if not _is_number(options.get("slow")):
        return "options.slow must be a number"
    if env and not isinstance(env, Mapping):
        return "options.env, when provided must be a mapping"
    term_timeout = options.get("term_timeout")
    if not (_is_number(term_timeout) and term_timeout > 0):
        return "options.term_timeout, when provided - must be a positive number"
    if options.get("term_code") not in {member.value for member in TerminationSignal}:
        return "options.term_code, when provided - must be a valid process signal"
    if not _is_json(options.get("term_ipc")):
        return "options.term_ipc, when provided - must be JSON serializable"
    if not isinstance(options.get("cover_svc"), str):
        return "options.cover_svc, when provided - must be a path to a coverage CLI script"
    if not _is_string_list(options.get("cover_args")):
        return "options.cover_args, when provided - must be a list of CLI arguments"
    if not _is_string_list(options.get("cover_ignore")):
        return "options.cover_ignore, when provided - must be a list of glob pattern strings"
    interpreter = options.get("interpreter")
    if not interpreter or not isinstance(interpreter, str):
        return "options.interpreter, when provided - must be a path to an executable"
    return None


def _coverage_args(options: Mapping[str, Any]) -> list[str]:
    svc: str = options["svc"]
    args = [options["cover_svc"], *options["cover_args"]]
    for pattern in options["cover_ignore"]:
        args.extend((_COVER_IGNORE_FLAG, pattern))
    args.append(svc if svc.endswith(_SCRIPT_SUFFIX) else svc + _SCRIPT_SUFFIX)
    if options["args"]:
        args.extend(["--", *options["args"]])
    return args


def validate(raw: Any, *, environ: Mapping[str, str] | None = None) -> LaunchConfig:
    """Return a ``LaunchConfig`` for ``raw`` or raise ``ConfigurationError``.

    ``raw`` is either a mapping of options or a bare value understood as
    ``options.svc``. When ``COVER`` is present in ``environ`` the argument
    vector is rewritten into a coverage tool invocation.
    """

    environ = os.environ if environ is None else environ
    given = dict(raw) if isinstance(raw, Mapping) else {"svc": raw}
    options: dict[str, Any] = {
        **DEFAULT_OPTIONS,
        "cwd": os.getcwd(),
        "cover_svc": _default_cover_svc(),
        "interpreter": sys.executable,
        **given,
    }
    reason = _first_violation(options)
    if reason is not None:
        raise ConfigurationError(reason, raw)

    coverage = _ENV_COVER in environ
    if coverage:
        args = _coverage_args(options)
    else:
        args = [_resolve_script(options["cwd"], options["svc"]), *options["args"]]
    return LaunchConfig(
        command=options["svc"],
        working_directory=Path(options["cwd"]),
        log_path=Path(options["log_path"]),
        readiness_marker=options["ready_notice"],
        args=tuple(args),
        interpreter=options["interpreter"],
        environment={str(k): str(v) for k, v in (options["env"] or {}).items()},
        start_timeout=float(options["timeout"]),
        slow_threshold=float(options["slow"]),
        termination_signal=TerminationSignal(options["term_code"]),
        termination_timeout=float(options["term_timeout"]),
        pre_termination_message=options["term_ipc"],
        coverage=coverage,
    )


def load_launch_config(
    path: Path,
    *,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> LaunchConfig:
    """Validate the ``[service]`` table of a TOML file.

    A relative ``cwd`` is resolved against the directory holding the file.
    """

    path = Path(path)
    data = tomllib.loads(path.read_text("utf-8"))
    options = dict(data.get("service", data))
    cwd = options.get("cwd", ".")
    if isinstance(cwd, str) and not os.path.isabs(cwd):
        options["cwd"] = str(path.parent / cwd)
    options.update(overrides or {})
    return validate(options, environ=environ)
