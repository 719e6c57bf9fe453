"""Logging setup for command-line runs."""

from .logging import configure_logging

__all__ = ["configure_logging"]
