"""Unit tests for the deployment orchestrator."""

import asyncio

import pytest

from meshloom.controllers import MeshDeployController, Request
from meshloom.core.constants import GATEWAY_OWNER_LABEL, MESH_FINALIZER
from meshloom.core.errors import ReadinessTimeoutError
from meshloom.core.kinds import (
    DEPLOYMENT,
    ISTIO_GATEWAY,
    ISTIO_OPERATOR,
    MESH,
    NAMESPACE,
    SERVICE_MESH_CONTROL_PLANE,
    SERVICE_MESH_MEMBER_ROLL,
)
from meshloom.core.models import ControlPlane, Mesh, MeshProvider, Peer


def istio_mesh(discovered=False, deleting=False, peers=None):
    control_plane = ControlPlane(
        namespace="istio-system",
        profiles=["default"],
        components=["istio-ingress"],
        peers=list(peers or []),
    )
    if discovered:
        mesh = Mesh.discovered(
            "spoke1", "istio-system", "installed", provider=MeshProvider.UPSTREAM_ISTIO, control_plane=control_plane
        )
    else:
        mesh = Mesh(
            name="mesh1",
            namespace="spoke1",
            provider=MeshProvider.UPSTREAM_ISTIO,
            cluster="spoke1",
            control_plane=control_plane,
        )
    if deleting:
        mesh.finalizers = [MESH_FINALIZER]
        mesh.deletion_timestamp = "2024-01-01T00:00:00Z"
    return mesh


def istiod_deployment(ready=True):
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "istiod", "namespace": "istio-system"},
        "spec": {"replicas": 1},
        "status": {"readyReplicas": 1 if ready else 0, "updatedReplicas": 1},
    }


def physical(kind, name, namespace="istio-system", labels=None):
    metadata = {"name": name, "namespace": namespace}
    if labels:
        metadata["labels"] = labels
    return {"apiVersion": kind.api_version, "kind": kind.kind, "metadata": metadata, "spec": {}}


def make_controller(hub, spoke, provider=MeshProvider.UPSTREAM_ISTIO):
    return MeshDeployController(
        "spoke1", hub, spoke, provider, poll_interval=0, rollout_timeout=0, deletion_timeout=0
    )


class TestDeploy:
    """Test installation of physical meshes."""

    def test_deploys_istio_mesh(self, hub, spoke):
        """Test that a user mesh is installed with its companion gateways."""
        hub.add(istio_mesh().to_dict())
        spoke.add(istiod_deployment())

        asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert hub.find(MESH, "spoke1", "mesh1")["metadata"]["finalizers"] == [MESH_FINALIZER]
        assert spoke.names(NAMESPACE) == ["istio-system"]
        assert spoke.names(ISTIO_OPERATOR, "istio-system") == ["mesh1", "mesh1-gateways"]
        assert spoke.names(ISTIO_GATEWAY) == []

    def test_peers_deploy_cross_network_gateway(self, hub, spoke):
        """Test that a federated mesh gets its cross-network gateway."""
        hub.add(istio_mesh(peers=[Peer(name="mesh2", cluster="spoke2")]).to_dict())
        spoke.add(istiod_deployment())

        asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert spoke.names(ISTIO_GATEWAY, "istio-system") == ["cross-network-gateway"]
        gateway = spoke.find(ISTIO_GATEWAY, "istio-system", "cross-network-gateway")
        assert gateway["metadata"]["labels"] == {GATEWAY_OWNER_LABEL: "mesh1"}

    def test_unpeered_mesh_removes_own_cross_network_gateway(self, hub, spoke):
        """Test that losing the last peer removes the gateway the mesh created."""
        hub.add(istio_mesh().to_dict())
        spoke.add(istiod_deployment())
        spoke.add(physical(ISTIO_GATEWAY, "cross-network-gateway", labels={GATEWAY_OWNER_LABEL: "mesh1"}))

        asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert spoke.names(ISTIO_GATEWAY) == []

    def test_unpeered_mesh_keeps_foreign_cross_network_gateway(self, hub, spoke):
        """Test that an unpeered mesh leaves another control plane's gateway in place."""
        hub.add(istio_mesh().to_dict())
        spoke.add(istiod_deployment())
        spoke.add(physical(ISTIO_GATEWAY, "cross-network-gateway", labels={GATEWAY_OWNER_LABEL: "installed"}))

        asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert spoke.names(ISTIO_GATEWAY) == ["cross-network-gateway"]
        assert ("delete", "Gateway", "istio-system", "cross-network-gateway") not in spoke.writes()

    def test_reapply_writes_nothing(self, hub, spoke):
        """Test that a second reconcile of an unchanged mesh is a no-op."""
        hub.add(istio_mesh().to_dict())
        spoke.add(istiod_deployment())
        controller = make_controller(hub, spoke)

        asyncio.run(controller.reconcile(Request("mesh", "spoke1", "mesh1")))
        writes = len(spoke.writes())
        asyncio.run(controller.reconcile(Request("mesh", "spoke1", "mesh1")))

        assert len(spoke.writes()) == writes

    def test_waits_for_istiod(self, hub, spoke):
        """Test that gateways are not installed before istiod is ready."""
        hub.add(istio_mesh().to_dict())
        spoke.add(istiod_deployment(ready=False))

        with pytest.raises(ReadinessTimeoutError):
            asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert spoke.names(ISTIO_OPERATOR, "istio-system") == ["mesh1"]

    def test_ignores_other_provider(self, hub, spoke):
        """Test that meshes of another provider are left alone."""
        hub.add(istio_mesh().to_dict())

        asyncio.run(
            make_controller(hub, spoke, MeshProvider.OPENSHIFT).reconcile(Request("mesh", "spoke1", "mesh1"))
        )

        assert spoke.writes() == []
        assert hub.writes() == []

    def test_discovered_mesh_without_peers(self, hub, spoke):
        """Test that discovered meshes are observed, not deployed."""
        mesh = istio_mesh(discovered=True)
        hub.add(mesh.to_dict())

        asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", mesh.name)))

        assert spoke.writes() == []

    def test_deploys_ossm_mesh(self, hub, spoke):
        """Test that an OSSM mesh becomes a control plane and member roll."""
        mesh = Mesh(
            name="mesh1",
            namespace="spoke1",
            provider=MeshProvider.OPENSHIFT,
            cluster="spoke1",
            control_plane=ControlPlane(namespace="istio-system"),
            member_namespaces=["bookinfo"],
        )
        hub.add(mesh.to_dict())

        asyncio.run(make_controller(hub, spoke, MeshProvider.OPENSHIFT).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert spoke.names(SERVICE_MESH_CONTROL_PLANE, "istio-system") == ["mesh1"]
        assert spoke.names(SERVICE_MESH_MEMBER_ROLL, "istio-system") == ["default"]
        assert spoke.names(DEPLOYMENT) == []


class TestDelete:
    """Test teardown of physical meshes."""

    def test_deleting_user_mesh_removes_physical_objects(self, hub, spoke):
        """Test that deleting a user mesh deletes what it deployed."""
        hub.add(istio_mesh(deleting=True).to_dict())
        spoke.add(physical(ISTIO_OPERATOR, "mesh1"))
        spoke.add(physical(ISTIO_OPERATOR, "mesh1-gateways"))
        spoke.add(physical(ISTIO_GATEWAY, "cross-network-gateway", labels={GATEWAY_OWNER_LABEL: "mesh1"}))

        asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert spoke.names(ISTIO_OPERATOR) == []
        assert spoke.names(ISTIO_GATEWAY) == []
        assert hub.find(MESH, "spoke1", "mesh1") is None

    def test_deleting_keeps_foreign_cross_network_gateway(self, hub, spoke):
        """Test that a gateway created for another control plane in the namespace survives."""
        hub.add(istio_mesh(deleting=True).to_dict())
        spoke.add(physical(ISTIO_OPERATOR, "mesh1"))
        spoke.add(physical(ISTIO_GATEWAY, "cross-network-gateway", labels={GATEWAY_OWNER_LABEL: "installed"}))

        asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert spoke.names(ISTIO_OPERATOR) == []
        assert spoke.names(ISTIO_GATEWAY) == ["cross-network-gateway"]

    def test_deleting_discovered_mesh_keeps_physical_objects(self, hub, spoke):
        """Test that deleting a discovered mesh leaves the cluster untouched."""
        mesh = istio_mesh(discovered=True, deleting=True)
        hub.add(mesh.to_dict())
        spoke.add(physical(ISTIO_OPERATOR, "installed"))

        asyncio.run(make_controller(hub, spoke).reconcile(Request("mesh", "spoke1", mesh.name)))

        assert spoke.names(ISTIO_OPERATOR, "istio-system") == ["installed"]
        assert spoke.writes() == []
        assert hub.find(MESH, "spoke1", mesh.name) is None

    def test_deleting_ossm_mesh(self, hub, spoke):
        """Test that the member roll and control plane are removed."""
        mesh = Mesh(
            name="mesh1",
            namespace="spoke1",
            provider=MeshProvider.OPENSHIFT,
            cluster="spoke1",
            control_plane=ControlPlane(namespace="istio-system"),
            finalizers=[MESH_FINALIZER],
            deletion_timestamp="2024-01-01T00:00:00Z",
        )
        hub.add(mesh.to_dict())
        spoke.add(physical(SERVICE_MESH_CONTROL_PLANE, "mesh1"))
        spoke.add(physical(SERVICE_MESH_MEMBER_ROLL, "default"))

        asyncio.run(make_controller(hub, spoke, MeshProvider.OPENSHIFT).reconcile(Request("mesh", "spoke1", "mesh1")))

        assert spoke.names(SERVICE_MESH_CONTROL_PLANE) == []
        assert spoke.names(SERVICE_MESH_MEMBER_ROLL) == []
