"""Logging setup and log sanitization for certkeeper."""

from certkeeper.logging.sanitize import sanitize_for_logs
from certkeeper.logging.setup import configure_logging

__all__ = ["configure_logging", "sanitize_for_logs"]
