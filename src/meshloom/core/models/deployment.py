"""MeshDeployment model."""

from dataclasses import dataclass, field
from typing import Any

from meshloom.core.constants import MESH_API_VERSION
from meshloom.core.models.base import Resource
from meshloom.core.models.mesh import ControlPlane, MeshConfig, MeshProvider


@dataclass
class MeshDeployment(Resource):
    """Template that fans out one Mesh per target cluster."""

    KIND = "MeshDeployment"

    provider: MeshProvider | None = None
    clusters: list[str] = field(default_factory=list)
    control_plane: ControlPlane | None = None
    mesh_config: MeshConfig | None = None
    member_namespaces: list[str] = field(default_factory=list)

    def mesh_name(self, cluster: str) -> str:
        return f"{cluster}-{self.name}"

    @classmethod
    def from_dict(cls, k8s_object: dict[str, Any]) -> "MeshDeployment":
        spec = k8s_object.get("spec", {})
        return cls(
            **cls.metadata_kwargs(k8s_object),
            provider=MeshProvider.parse(spec.get("meshProvider")),
            clusters=list(dict.fromkeys(spec.get("clusters") or [])),
            control_plane=ControlPlane.from_dict(spec.get("controlPlane")),
            mesh_config=MeshConfig.from_dict(spec.get("meshConfig")),
            member_namespaces=list(spec.get("meshMemberRoll") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        spec: dict[str, Any] = {"clusters": list(self.clusters)}
        if self.provider is not None:
            spec["meshProvider"] = self.provider.value
        if self.control_plane is not None:
            spec["controlPlane"] = self.control_plane.to_dict()
        if self.mesh_config is not None:
            spec["meshConfig"] = self.mesh_config.to_dict()
        if self.member_namespaces:
            spec["meshMemberRoll"] = list(self.member_namespaces)
        return {
            "apiVersion": MESH_API_VERSION,
            "kind": self.KIND,
            "metadata": self.metadata_dict(),
            "spec": spec,
        }
