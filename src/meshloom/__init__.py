"""meshloom - Multicluster service mesh deployment and federation for Kubernetes."""

from meshloom.cli import cli

__version__ = "0.1.0"
__all__ = ["cli"]
