"""Command line interface."""

from meshloom.cli.main import cli

__all__ = ["cli"]
