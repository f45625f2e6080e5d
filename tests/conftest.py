"""Shared pytest fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from e2e_harness.runner import LaunchConfig, ProcessSupervisor, ServiceHandle, validate

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture()
def fixtures_dir() -> Path:
    return FIXTURES


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., LaunchConfig]:
    def _make(svc: str, **options: Any) -> LaunchConfig:
        raw = {
            "svc": svc,
            "cwd": str(FIXTURES),
            "log_path": str(tmp_path / "e2e.log"),
            "ready_notice": "listening on port",
            **options,
        }
        return validate(raw, environ={})

    return _make


@pytest.fixture()
def supervisor() -> Iterator[ProcessSupervisor]:
    env = {k: v for k, v in os.environ.items() if k not in {"COVER", "SUT"}}
    supervisor = ProcessSupervisor(base_env=env)
    handles: list[ServiceHandle] = []
    real_start = supervisor.start

    def _tracking_start(*args: Any, **kwargs: Any) -> ServiceHandle:
        handle = real_start(*args, **kwargs)
        handles.append(handle)
        return handle

    supervisor.start = _tracking_start  # type: ignore[method-assign]
    yield supervisor
    for handle in handles:
        supervisor.stop(handle).result(timeout=10)
