"""Click-based CLI for launching and checking supervised services."""

from __future__ import annotations

import logging
import shlex
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import click

from e2e_harness.runner import (
    ConfigurationError,
    LaunchConfig,
    LogChunk,
    ProcessSupervisor,
    StartError,
    StopResult,
    TerminationSignal,
    load_launch_config,
    validate,
)
from e2e_harness.version import __version__


def _parse_env(entries: Iterable[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for entry in entries:
        if "=" not in entry:
            raise click.BadParameter(f"Environment entries must be KEY=VALUE (received '{entry}').")
        key, value = entry.split("=", 1)
        env[key.strip()] = value
    return env


def _load_config(
    config_path: Path | None,
    svc: str | None,
    args: tuple[str, ...],
    **options: Any,
) -> LaunchConfig:
    overrides = {key: value for key, value in options.items() if value not in (None, {})}
    if svc is not None:
        overrides["svc"] = svc
    if args:
        overrides["args"] = list(args)
    try:
        if config_path is not None:
            return load_launch_config(config_path, overrides=overrides)
        return validate(overrides)
    except ConfigurationError as exc:
        raise click.UsageError(exc.reason) from exc


def _summary(result: StopResult) -> str:
    stages = ", ".join(result.stages) or "none"
    return (
        f"Service stopped (exit code {result.returncode}, "
        f"escalation: {stages}, {result.elapsed:.2f}s)."
    )


def service_options(func):
    decorators = [
        click.argument("args", nargs=-1, type=click.UNPROCESSED),
        click.argument("svc", required=False),
        click.option(
            "--config",
            "config_path",
            type=click.Path(exists=True, dir_okay=False, readable=True, path_type=Path),
            help="TOML file with a [service] table of launch options.",
        ),
        click.option("--cwd", help="Directory the service runs in."),
        click.option("--log-path", help="File that receives the service output."),
        click.option("--ready-notice", help="Text on stdout that marks the service as ready."),
        click.option("--env", "env", multiple=True, help="KEY=VALUE added to the environment."),
        click.option(
            "--term-code",
            type=click.Choice([member.value for member in TerminationSignal]),
            help="Signal sent to stop the service.",
        ),
        click.option("--term-timeout", type=float, help="Seconds between shutdown escalations."),
        click.option("--timeout", type=float, help="Seconds allowed for the service to get ready."),
    ]
    for decorator in decorators:
        func = decorator(func)
    return func


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log supervisor activity in detail.")
@click.version_option(__version__, prog_name="e2e-harness")
def app(verbose: bool) -> None:
    """Start services for end-to-end tests and shut them down gracefully."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command(context_settings={"ignore_unknown_options": True})
@service_options
def check(
    svc: str | None,
    args: tuple[str, ...],
    config_path: Path | None,
    env: tuple[str, ...],
    **options: Any,
) -> None:
    """Validate launch options and print the resolved command."""

    config = _load_config(config_path, svc, args, env=_parse_env(env), **options)
    click.echo(f"command: {shlex.join(config.argv)}")
    click.echo(f"cwd: {config.working_directory}")
    click.echo(f"log: {config.log_path}")
    if config.coverage:
        click.echo("coverage: enabled")


@app.command(context_settings={"ignore_unknown_options": True})
@service_options
@click.option(
    "--echo/--no-echo",
    default=False,
    show_default=True,
    help="Mirror service output to the terminal.",
)
def run(
    svc: str | None,
    args: tuple[str, ...],
    config_path: Path | None,
    env: tuple[str, ...],
    echo: bool,
    **options: Any,
) -> None:
    """Start a service, wait until it is ready, and stop it on Ctrl+C."""

    config = _load_config(config_path, svc, args, env=_parse_env(env), **options)
    supervisor = ProcessSupervisor()

    def _echo(chunk: LogChunk) -> None:
        click.echo(chunk.text, nl=False, err=chunk.stream == "stderr")

    handle = supervisor.start(config, stream_observers=[_echo] if echo else None)
    try:
        handle.wait_ready(config.start_timeout)
    except TimeoutError as exc:
        supervisor.stop(handle).result()
        raise click.ClickException(
            f"Service was not ready within {config.start_timeout:g}s; see {config.log_path}."
        ) from exc
    except StartError as exc:
        supervisor.stop(handle).result()
        raise click.ClickException(f"{exc}; see {config.log_path}.") from exc

    click.echo(f"Service ready (pid {handle.pid}); press Ctrl+C to stop.")
    try:
        result = handle.stopped.result()
    except KeyboardInterrupt:
        result = supervisor.stop(handle).result()
    click.echo(_summary(result))
