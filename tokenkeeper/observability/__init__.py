"""Logging setup for tokenkeeper."""

from .logging_config import TokenRedactionFilter, setup_logging

__all__ = ["TokenRedactionFilter", "setup_logging"]
