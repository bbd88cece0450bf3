"""Unit tests for the OpenShift Service Mesh translator."""

import pytest

from meshloom.core.constants import EGRESS_FOR_LABEL, INGRESS_FOR_LABEL
from meshloom.core.models import ControlPlane, Mesh, MeshProvider, Peer
from meshloom.mesh import OSSMTranslator


def make_mesh(peers=None, components=None, members=None):
    return Mesh(
        name="mesh1",
        namespace="spoke1",
        provider=MeshProvider.OPENSHIFT,
        cluster="spoke1",
        trust_domain="mesh1.local",
        control_plane=ControlPlane(
            namespace="istio-system",
            version="v2.3",
            profiles=["default"],
            components=components if components is not None else ["kiali", "3scale"],
            peers=list(peers or []),
        ),
        member_namespaces=list(members if members is not None else ["bookinfo"]),
    )


@pytest.fixture
def translator():
    return OSSMTranslator()


class TestToPhysical:
    """Test translation into ServiceMeshControlPlane resources."""

    def test_control_plane(self, translator):
        """Test the control plane and member roll."""
        physical = translator.to_physical(make_mesh())

        smcp = physical.control_plane
        assert smcp["kind"] == "ServiceMeshControlPlane"
        assert smcp["metadata"] == {"name": "mesh1", "namespace": "istio-system"}
        assert smcp["spec"]["version"] == "v2.3"
        assert smcp["spec"]["profiles"] == ["default"]
        assert smcp["spec"]["security"] == {"trust": {"domain": "mesh1.local"}}
        # kiali comes with the default profile
        assert smcp["spec"]["addons"] == {"threeScale": {"enabled": True}}

        assert physical.member_roll["metadata"] == {"name": "default", "namespace": "istio-system"}
        assert physical.member_roll["spec"] == {"members": ["bookinfo"]}
        assert physical.gateways is None
        assert physical.cross_network_gateway is None

    def test_no_members_no_member_roll(self, translator):
        """Test that an empty member list yields no member roll."""
        assert translator.to_physical(make_mesh(members=[])).member_roll is None

    def test_default_version(self, translator):
        """Test the version used when none is requested."""
        mesh = make_mesh()
        mesh.control_plane.version = ""

        assert translator.to_physical(mesh).control_plane["spec"]["version"] == "v2.1"

    def test_peer_gateways(self, translator):
        """Test the per-peer federation gateways."""
        physical = translator.to_physical(make_mesh(peers=[Peer(name="mesh2", cluster="spoke2")]))
        gateways = physical.control_plane["spec"]["gateways"]

        egress = gateways["egressGateways"]["mesh2-egress"]
        ingress = gateways["ingressGateways"]["mesh2-ingress"]
        assert egress["service"]["metadata"]["labels"] == {EGRESS_FOR_LABEL: "mesh2"}
        assert egress["requestedNetworkView"] == ["network-mesh2"]
        assert ingress["service"]["metadata"]["labels"] == {INGRESS_FOR_LABEL: "mesh2"}
        assert ingress["service"]["type"] == "LoadBalancer"
        assert {p["port"] for p in ingress["service"]["ports"]} == {15443, 8188}

    def test_peers_without_gateway_components(self, translator):
        """Test that federation gateways are switched on even without ingress or egress."""
        physical = translator.to_physical(make_mesh(components=[], peers=[Peer(name="mesh2", cluster="spoke2")]))
        gateways = physical.control_plane["spec"]["gateways"]

        assert gateways["enabled"] is True
        assert "ingress" not in gateways
        assert "egress" not in gateways
        assert list(gateways["ingressGateways"]) == ["mesh2-ingress"]

    def test_gateway_toggles(self, translator):
        """Test ingress and egress toggles outside the profile."""
        mesh = make_mesh(components=["istio-ingress"])
        mesh.control_plane.profiles = ["small"]
        gateways = translator.to_physical(mesh).control_plane["spec"]["gateways"]

        assert gateways["enabled"] is True
        assert gateways["ingress"] == {"enabled": True}


class TestToLogical:
    """Test discovery of meshes from ServiceMeshControlPlanes."""

    def test_round_trip(self, translator):
        """Test that a discovered mesh translates back to the same objects."""
        physical = translator.to_physical(make_mesh())

        discovered = translator.to_logical(
            physical.control_plane, OSSMTranslator.member_namespaces(physical.member_roll), "spoke1"
        )
        again = translator.to_physical(discovered)

        assert again.control_plane == physical.control_plane
        assert again.member_roll == physical.member_roll

    def test_readiness(self, translator):
        """Test that readiness is copied and its components flattened."""
        smcp = {
            "kind": "ServiceMeshControlPlane",
            "metadata": {"name": "basic", "namespace": "istio-system"},
            "spec": {"version": "v2.2", "profiles": ["default"]},
            "status": {
                "readiness": {
                    "components": {
                        "ready": ["istio-discovery", "grafana"],
                        "pending": ["kiali"],
                        "unready": [],
                    }
                }
            },
        }
        mesh = translator.to_logical(smcp, [], "spoke1")

        assert mesh.name == "spoke1-istio-system-basic"
        assert mesh.physical_name() == "basic"
        assert mesh.provider is MeshProvider.OPENSHIFT
        assert mesh.control_plane.components == ["istio-discovery", "grafana", "kiali"]
        assert mesh.readiness["components"]["pending"] == ["kiali"]
        assert mesh.effective_trust_domain == "cluster.local"

    def test_missing_member_roll(self):
        """Test that an absent member roll means no members."""
        assert OSSMTranslator.member_namespaces(None) == []
