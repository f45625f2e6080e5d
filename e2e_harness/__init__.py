"""Supervise services started for end-to-end test runs."""

from .version import __version__  # noqa: F401
