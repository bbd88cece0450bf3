"""Core domain models for meshloom."""

from meshloom.core.models.base import Resource
from meshloom.core.models.deployment import MeshDeployment
from meshloom.core.models.federation import MeshFederation, MeshPeer, TrustType
from meshloom.core.models.mesh import (
    AccessLogging,
    ControlPlane,
    Mesh,
    MeshConfig,
    MeshProvider,
    Peer,
    ProxyConfig,
    discovered_mesh_name,
)

__all__ = [
    "AccessLogging",
    "ControlPlane",
    "Mesh",
    "MeshConfig",
    "MeshDeployment",
    "MeshFederation",
    "MeshPeer",
    "MeshProvider",
    "Peer",
    "ProxyConfig",
    "Resource",
    "TrustType",
    "discovered_mesh_name",
]
