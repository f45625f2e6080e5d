"""Command-line entry point for the e2e harness."""

from .main import app

__all__ = ["app"]
