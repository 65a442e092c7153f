"""Utility functions and classes for animestream."""

from .config import Config
from .logging import log_error

__all__ = ["Config", "log_error"]
