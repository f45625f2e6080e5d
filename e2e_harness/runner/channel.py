"""Side channel for control messages sent to a supervised service.

The supervisor hands the read end of a pipe to the child and advertises the
descriptor number in ``E2E_CONTROL_FD``. Messages are JSON documents, one per
line. Services call :func:`listen` (or iterate :func:`iter_control_messages`)
to receive them.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterator, Mapping
from typing import Any

__all__ = [
    "CONTROL_FD_ENV",
    "ControlChannel",
    "iter_control_messages",
    "listen",
]

CONTROL_FD_ENV = "E2E_CONTROL_FD"

logger = logging.getLogger("e2e_harness.runner")


class ControlChannel:
    """Parent side of the control pipe."""

    def __init__(self) -> None:
        self.child_fd, self._write_fd = os.pipe()
        os.set_inheritable(self.child_fd, True)
        os.set_blocking(self._write_fd, False)
        self._lock = threading.Lock()
        self._closed = False

    def environment(self) -> dict[str, str]:
        return {CONTROL_FD_ENV: str(self.child_fd)}

    def detach_child(self) -> None:
        """Close the parent's copy of the child end once the child holds it."""

        if self.child_fd >= 0:
            os.close(self.child_fd)
            self.child_fd = -1

    def send(self, payload: Any) -> bool:
        """Write ``payload`` to the child; return whether it was delivered to the pipe.

        The write never blocks. A payload that does not fit in the pipe buffer
        is reported as not delivered.
        """

        data = (json.dumps(payload) + "\n").encode("utf-8")
        with self._lock:
            if self._closed:
                return False
            try:
                written = os.write(self._write_fd, data)
            except OSError as exc:
                logger.debug("control message not delivered: %s", exc)
                return False
        if written < len(data):
            logger.debug("control message not delivered: %d of %d bytes written", written, len(data))
            return False
        return True

    def close(self) -> None:
        self.detach_child()
        with self._lock:
            if self._closed:
                return
            self._closed = True
            os.close(self._write_fd)


def iter_control_messages(environ: Mapping[str, str] | None = None) -> Iterator[Any]:
    """Yield control messages until the supervisor closes the channel."""

    environ = os.environ if environ is None else environ
    raw_fd = environ.get(CONTROL_FD_ENV)
    if not raw_fd:
        return
    with os.fdopen(int(raw_fd), "r", encoding="utf-8") as pipe:
        for line in pipe:
            line = line.strip()
            if line:
                yield json.loads(line)


def listen(
    callback: Callable[[Any], None],
    *,
    environ: Mapping[str, str] | None = None,
) -> threading.Thread | None:
    """Deliver control messages to ``callback`` from a daemon thread.

    Returns ``None`` when the process was not started with a control channel.
    """

    environ = os.environ if environ is None else environ
    if not environ.get(CONTROL_FD_ENV):
        return None

    def _pump() -> None:
        for message in iter_control_messages(environ):
            callback(message)

    thread = threading.Thread(target=_pump, name="e2e-control", daemon=True)
    thread.start()
    return thread
