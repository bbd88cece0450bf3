"""Unit tests for the discovery reconciler."""

import asyncio

import pytest

from meshloom.controllers import MeshDiscoveryController, Request
from meshloom.core.kinds import ISTIO_OPERATOR, MESH, SERVICE_MESH_CONTROL_PLANE, SERVICE_MESH_MEMBER_ROLL
from meshloom.core.models import ControlPlane, Mesh, MeshProvider, Peer


def operator(name, components=None, revision=""):
    spec = {"profile": "default", "namespace": "istio-system", "components": components or {}}
    if revision:
        spec["revision"] = revision
    return {
        "apiVersion": ISTIO_OPERATOR.api_version,
        "kind": ISTIO_OPERATOR.kind,
        "metadata": {"name": name, "namespace": "istio-system"},
        "spec": spec,
    }


def injected_namespace(name):
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name, "labels": {"istio-injection": "enabled"}}}


def user_mesh(name="mesh1"):
    return Mesh(
        name=name,
        namespace="spoke1",
        provider=MeshProvider.UPSTREAM_ISTIO,
        cluster="spoke1",
        control_plane=ControlPlane(namespace="istio-system"),
    )


@pytest.fixture
def istio(hub, spoke):
    return MeshDiscoveryController("spoke1", hub, spoke, MeshProvider.UPSTREAM_ISTIO)


@pytest.fixture
def ossm(hub, spoke):
    return MeshDiscoveryController("spoke1", hub, spoke, MeshProvider.OPENSHIFT)


class TestIstioDiscovery:
    """Test discovery of IstioOperators."""

    def test_discovers_operator(self, hub, spoke, istio):
        """Test that an unclaimed operator becomes a discovered mesh."""
        spoke.add(operator("installed"))
        spoke.add(injected_namespace("bookinfo"))
        spoke.add({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "plain"}})

        asyncio.run(istio.reconcile(Request("physical", "istio-system", "installed")))

        assert hub.names(MESH, "spoke1") == ["spoke1-istio-system-installed"]
        mesh = Mesh.from_dict(hub.find(MESH, "spoke1", "spoke1-istio-system-installed"))
        assert mesh.is_discovered
        assert mesh.member_namespaces == ["bookinfo"]
        assert mesh.physical_name() == "installed"

    def test_revision_selects_members(self, hub, spoke, istio):
        """Test that revisioned control planes only count their own namespaces."""
        spoke.add(operator("canary", revision="canary"))
        spoke.add(injected_namespace("default-rev"))
        revisioned = injected_namespace("canary-rev")
        revisioned["metadata"]["labels"]["istio.io/rev"] = "canary"
        spoke.add(revisioned)

        asyncio.run(istio.reconcile(Request("physical", "istio-system", "canary")))

        mesh = Mesh.from_dict(hub.find(MESH, "spoke1", "spoke1-istio-system-canary"))
        assert mesh.member_namespaces == ["canary-rev"]
        assert mesh.control_plane.revision == "canary"

    def test_companion_gateways_fold_into_base(self, hub, spoke, istio):
        """Test that a gateways operator is reported as part of its control plane."""
        spoke.add(operator("installed"))
        spoke.add(
            operator(
                "installed-gateways",
                components={"ingressGateways": [{"name": "istio-ingressgateway", "enabled": True}]},
            )
        )

        asyncio.run(istio.reconcile(Request("physical", "istio-system", "installed-gateways")))

        assert hub.names(MESH, "spoke1") == ["spoke1-istio-system-installed"]
        mesh = Mesh.from_dict(hub.find(MESH, "spoke1", "spoke1-istio-system-installed"))
        assert mesh.control_plane.components == ["istio-ingress"]

    def test_user_mesh_is_not_discovered(self, hub, spoke, istio):
        """Test that objects deployed for a user mesh are not mirrored."""
        hub.add(user_mesh().to_dict())
        spoke.add(operator("mesh1"))
        spoke.add(operator("mesh1-gateways"))

        asyncio.run(istio.reconcile(Request("physical", "istio-system", "mesh1")))
        asyncio.run(istio.reconcile(Request("physical", "istio-system", "mesh1-gateways")))

        assert hub.names(MESH, "spoke1") == ["mesh1"]

    def test_different_revision_is_not_claimed(self, hub, spoke, istio):
        """Test that a user mesh only claims operators of its own revision."""
        hub.add(user_mesh().to_dict())
        spoke.add(operator("mesh1", revision="canary"))

        asyncio.run(istio.reconcile(Request("physical", "istio-system", "mesh1")))

        assert hub.names(MESH, "spoke1") == ["mesh1", "spoke1-istio-system-mesh1"]

    def test_retracts_deleted_operator(self, hub, spoke, istio):
        """Test that a discovered mesh goes away with its operator."""
        spoke.add(operator("installed"))
        asyncio.run(istio.reconcile(Request("physical", "istio-system", "installed")))
        del spoke.objects[("IstioOperator", "istio-system", "installed")]

        asyncio.run(istio.reconcile(Request("physical", "istio-system", "installed")))

        assert hub.names(MESH, "spoke1") == []

    def test_preserves_peers(self, hub, spoke, istio):
        """Test that re-discovery keeps federation peers."""
        spoke.add(operator("installed"))
        asyncio.run(istio.reconcile(Request("physical", "istio-system", "installed")))
        obj = hub.find(MESH, "spoke1", "spoke1-istio-system-installed")
        obj["spec"]["controlPlane"]["peers"] = [{"name": "mesh2", "cluster": "spoke2"}]
        hub.add(obj)
        spoke.add(injected_namespace("bookinfo"))

        asyncio.run(istio.reconcile(Request("physical", "istio-system", "installed")))

        mesh = Mesh.from_dict(hub.find(MESH, "spoke1", "spoke1-istio-system-installed"))
        assert mesh.peers == [Peer(name="mesh2", cluster="spoke2")]
        assert mesh.member_namespaces == ["bookinfo"]

    def test_user_mesh_displaces_discovered_duplicate(self, hub, spoke, istio):
        """Test that user intent wins over an earlier discovery."""
        spoke.add(operator("mesh1"))
        asyncio.run(istio.reconcile(Request("physical", "istio-system", "mesh1")))
        assert hub.names(MESH, "spoke1") == ["spoke1-istio-system-mesh1"]

        hub.add(user_mesh().to_dict())
        asyncio.run(istio.reconcile(Request("mesh", "spoke1", "mesh1")))

        assert hub.names(MESH, "spoke1") == ["mesh1"]


class TestOSSMDiscovery:
    """Test discovery of ServiceMeshControlPlanes."""

    def control_plane(self):
        return {
            "apiVersion": SERVICE_MESH_CONTROL_PLANE.api_version,
            "kind": SERVICE_MESH_CONTROL_PLANE.kind,
            "metadata": {"name": "basic", "namespace": "istio-system"},
            "spec": {"version": "v2.2", "profiles": ["default"]},
        }

    def member_roll(self, members):
        return {
            "apiVersion": SERVICE_MESH_MEMBER_ROLL.api_version,
            "kind": SERVICE_MESH_MEMBER_ROLL.kind,
            "metadata": {"name": "default", "namespace": "istio-system"},
            "spec": {"members": members},
        }

    def test_discovers_control_plane(self, hub, spoke, ossm):
        """Test that a control plane without a member roll has no members."""
        spoke.add(self.control_plane())

        asyncio.run(ossm.reconcile(Request("physical", "istio-system", "basic")))

        mesh = Mesh.from_dict(hub.find(MESH, "spoke1", "spoke1-istio-system-basic"))
        assert mesh.provider is MeshProvider.OPENSHIFT
        assert mesh.member_namespaces == []

    def test_member_roll_updates_members(self, hub, spoke, ossm):
        """Test that member roll changes reach the discovered mesh."""
        spoke.add(self.control_plane())
        asyncio.run(ossm.reconcile(Request("physical", "istio-system", "basic")))
        spoke.add(self.member_roll(["bookinfo", "shop"]))

        asyncio.run(ossm.reconcile(Request("member-roll", "istio-system", "default")))

        mesh = Mesh.from_dict(hub.find(MESH, "spoke1", "spoke1-istio-system-basic"))
        assert mesh.member_namespaces == ["bookinfo", "shop"]

    def test_retracts_deleted_control_plane(self, hub, spoke, ossm):
        """Test that the discovered mesh is removed with its control plane."""
        spoke.add(self.control_plane())
        asyncio.run(ossm.reconcile(Request("physical", "istio-system", "basic")))
        del spoke.objects[("ServiceMeshControlPlane", "istio-system", "basic")]

        asyncio.run(ossm.reconcile(Request("physical", "istio-system", "basic")))

        assert hub.names(MESH) == []
