"""Callback-style adapter used by test frameworks to set up and tear down a service."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from typing import Any

from e2e_harness.runner import (
    LaunchConfig,
    ProcessSupervisor,
    ServiceHandle,
    StopResult,
    SupervisorBusyError,
    validate,
)

__all__ = ["Report", "ServiceHarness", "Timing"]

_ENV_TARGET = "SUT"

Report = Callable[[BaseException | None], None]
Timing = Callable[[float, float], None]


class ServiceHarness:
    """Start a service before a suite and stop it after.

    ``start`` and ``stop`` take a single ``report`` callback which receives
    ``None`` on success or the failure. When ``SUT`` is set in the environment
    the suite targets an already running service and nothing is launched.
    """

    def __init__(
        self,
        options: Any,
        *,
        supervisor: ProcessSupervisor | None = None,
        logger: logging.Logger | None = None,
        environ: Mapping[str, str] | None = None,
        timing: Timing | None = None,
    ) -> None:
        self.environ = os.environ if environ is None else environ
        self.config: LaunchConfig = validate(options, environ=self.environ)
        self.logger = logger or logging.getLogger("e2e_harness.harness")
        self.supervisor = supervisor or ProcessSupervisor(logger=self.logger)
        self.timing = timing
        self.handle: ServiceHandle | None = None
        self.teardown: Callable[[Report], None] | None = None

    @property
    def external_target(self) -> str | None:
        return self.environ.get(_ENV_TARGET)

    def start(self, report: Report) -> None:
        self.teardown = self.stop
        if self.external_target:
            self.logger.info("test target: %s", self.external_target)
            report(None)
            return
        if self.timing is not None:
            self.timing(self.config.start_timeout, self.config.slow_threshold)
        try:
            self.handle = self.supervisor.start(self.config)
        except SupervisorBusyError as exc:
            report(exc)
            return
        self.handle.ready.add_done_callback(lambda future: report(future.exception()))

    def stop(self, report: Report) -> None:
        if self.handle is None:
            report(None)
            return
        if self.timing is not None:
            term_timeout = self.config.termination_timeout
            self.timing(term_timeout * 3, term_timeout * 1.5)
        self.supervisor.stop(self.handle).add_done_callback(lambda _future: report(None))

    # ----------------------------------------------------------- context usage
    def __enter__(self) -> ServiceHarness:
        if self.external_target:
            self.logger.info("test target: %s", self.external_target)
            return self
        self.handle = self.supervisor.start(self.config)
        self.teardown = self.stop
        try:
            self.handle.wait_ready(self.config.start_timeout)
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> StopResult | None:
        """Stop the service and block until its log is flushed."""

        if self.handle is None:
            return None
        return self.supervisor.stop(self.handle).result()
