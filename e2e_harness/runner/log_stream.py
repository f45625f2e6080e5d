"""Capture service output into a log file while notifying observers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock

__all__ = ["LogChunk", "LogStream", "STDERR_PREFIX"]

STDERR_PREFIX = "ERR: "


@dataclass(slots=True)
class LogChunk:
    """A single piece of captured output."""

    stream: str
    text: str
    timestamp: datetime


class LogStream:
    """Append-only log sink owned by one supervised process.

    The file is truncated when the stream is opened. Once ``writable`` is
    cleared (the process exited) further writes are dropped so nothing lands
    on a handle that is being closed.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.unlink(missing_ok=True)
        self._handle = self.path.open("a", encoding="utf-8", newline="")
        self._listeners: list[Callable[[LogChunk], None]] = []
        self._lock = Lock()
        self.writable = True

    def __enter__(self) -> LogStream:  # noqa: D401 - context manager
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def close(self) -> None:
        with self._lock:
            self.writable = False
            if self._handle.closed:
                return
            self._handle.flush()
            self._handle.close()
            self._listeners.clear()

    def write(self, text: str, stream: str = "stdout") -> LogChunk | None:
        if stream == "stderr":
            text = STDERR_PREFIX + text
        chunk = LogChunk(stream=stream, text=text, timestamp=datetime.now(UTC))
        with self._lock:
            if not self.writable or self._handle.closed:
                return None
            self._handle.write(text)
            self._handle.flush()
            listeners = list(self._listeners)
        for listener in listeners:
            listener(chunk)
        return chunk

    def add_listener(self, callback: Callable[[LogChunk], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _remove() -> None:
            with self._lock:
                try:
                    self._listeners.remove(callback)
                except ValueError:  # pragma: no cover - already removed
                    pass

        return _remove
