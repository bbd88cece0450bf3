"""Utility functions."""

from meshloom.utils.config import Settings, load_config
from meshloom.utils.logging import setup_logging

__all__ = ["Settings", "load_config", "setup_logging"]
