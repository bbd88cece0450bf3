"""Resource kinds the controllers read and write."""

from dataclasses import dataclass
from typing import Any

from meshloom.core.constants import MESH_API_VERSION


@dataclass(frozen=True)
class ResourceKind:
    """API coordinates of a Kubernetes resource type."""

    api_version: str
    kind: str
    plural: str
    namespaced: bool = True

    @property
    def group(self) -> str:
        return self.api_version.split("/", 1)[0] if "/" in self.api_version else ""

    @property
    def version(self) -> str:
        return self.api_version.split("/", 1)[-1]

    @property
    def is_core(self) -> bool:
        return self.group in ("", "apps")


# Logical API
MESH = ResourceKind(MESH_API_VERSION, "Mesh", "meshes")
MESH_DEPLOYMENT = ResourceKind(MESH_API_VERSION, "MeshDeployment", "meshdeployments")
MESH_FEDERATION = ResourceKind(MESH_API_VERSION, "MeshFederation", "meshfederations")

# Kubernetes
NAMESPACE = ResourceKind("v1", "Namespace", "namespaces", namespaced=False)
CONFIG_MAP = ResourceKind("v1", "ConfigMap", "configmaps")
SECRET = ResourceKind("v1", "Secret", "secrets")
SERVICE = ResourceKind("v1", "Service", "services")
POD = ResourceKind("v1", "Pod", "pods")
DEPLOYMENT = ResourceKind("apps/v1", "Deployment", "deployments")

# Istio
ISTIO_OPERATOR = ResourceKind("install.istio.io/v1alpha1", "IstioOperator", "istiooperators")
ISTIO_GATEWAY = ResourceKind("networking.istio.io/v1alpha3", "Gateway", "gateways")

# OpenShift Service Mesh
SERVICE_MESH_CONTROL_PLANE = ResourceKind("maistra.io/v2", "ServiceMeshControlPlane", "servicemeshcontrolplanes")
SERVICE_MESH_MEMBER_ROLL = ResourceKind("maistra.io/v1", "ServiceMeshMemberRoll", "servicemeshmemberrolls")
SERVICE_MESH_PEER = ResourceKind("federation.maistra.io/v1", "ServiceMeshPeer", "servicemeshpeers")

ALL_KINDS = (
    MESH,
    MESH_DEPLOYMENT,
    MESH_FEDERATION,
    NAMESPACE,
    CONFIG_MAP,
    SECRET,
    SERVICE,
    POD,
    DEPLOYMENT,
    ISTIO_OPERATOR,
    ISTIO_GATEWAY,
    SERVICE_MESH_CONTROL_PLANE,
    SERVICE_MESH_MEMBER_ROLL,
    SERVICE_MESH_PEER,
)


def kind_of(k8s_object: dict[str, Any]) -> ResourceKind:
    """Resolve the ResourceKind of a manifest from its apiVersion and kind."""
    api_version = k8s_object.get("apiVersion", "")
    kind = k8s_object.get("kind", "")
    for candidate in ALL_KINDS:
        if candidate.api_version == api_version and candidate.kind == kind:
            return candidate
    raise ValueError(f"Unsupported resource: {api_version} {kind}")
