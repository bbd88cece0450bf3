"""CLI command implementations."""

import json
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table

from meshloom.controllers import (
    Controller,
    ControllerRunner,
    IstioTrustAgent,
    MeshDeployController,
    MeshDeploymentController,
    MeshDiscoveryController,
    MeshFederationController,
    OSSMFederationAgent,
)
from meshloom.core.errors import ValidationError
from meshloom.core.kinds import MESH
from meshloom.core.models import Mesh, MeshProvider
from meshloom.k8s.client import K8sClient
from meshloom.mesh import translator_for
from meshloom.utils.config import Settings

console = Console()


def translate_manifests(documents: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Translate Mesh documents into the physical manifests that implement them."""
    manifests: list[dict[str, Any]] = []
    for document in documents:
        if not document:
            continue
        if document.get("kind") != Mesh.KIND:
            raise ValidationError(f"Expected a {Mesh.KIND} document, got {document.get('kind')!r}")
        mesh = Mesh.from_dict(document)
        if mesh.provider is None:
            raise ValidationError(f"meshProvider field in mesh object {mesh.name} is empty")
        manifests.extend(translator_for(mesh.provider).to_physical(mesh).objects())
    return manifests


def mesh_summary(mesh: Mesh) -> dict[str, Any]:
    """Flatten a mesh into the columns shown by ``meshloom meshes``."""
    control_plane = mesh.control_plane
    return {
        "cluster": mesh.namespace,
        "name": mesh.name,
        "provider": mesh.provider.value if mesh.provider else "",
        "namespace": control_plane.namespace if control_plane else "",
        "version": control_plane.version if control_plane else "",
        "discovered": mesh.is_discovered,
        "peers": [f"{peer.cluster}/{peer.name}" for peer in mesh.peers],
    }


async def list_meshes_async(settings: Settings, cluster: str | None, output: str) -> None:
    """List the logical meshes registered on the hub."""
    try:
        hub = K8sClient(settings.hub_kubeconfig)
        meshes = [Mesh.from_dict(obj) for obj in await hub.list(MESH, cluster)]

        if output == "json":
            _output_json(meshes)
        elif output == "table":
            _output_table(meshes)
        else:
            console.print(f"Output format '{output}' not supported")

    except Exception as e:
        console.print(f"Error: {e}")


def hub_controllers(settings: Settings, hub: K8sClient) -> list[Controller]:
    return [
        MeshDeploymentController(hub),
        MeshFederationController(hub, key_size=settings.ca_key_size),
    ]


def agent_controllers(settings: Settings, hub: K8sClient, spoke: K8sClient) -> list[Controller]:
    """Controllers run on one spoke cluster, per enabled mesh provider."""
    if not settings.cluster_name:
        raise ValidationError("cluster_name must be set for the agent")

    controllers: list[Controller] = []
    for value in settings.providers:
        provider = MeshProvider.parse(value)
        assert provider is not None
        controllers.append(
            MeshDeployController(
                settings.cluster_name,
                hub,
                spoke,
                provider,
                poll_interval=settings.poll_interval,
                rollout_timeout=settings.rollout_timeout,
                deletion_timeout=settings.deletion_timeout,
            )
        )
        controllers.append(MeshDiscoveryController(settings.cluster_name, hub, spoke, provider))
        if provider is MeshProvider.UPSTREAM_ISTIO:
            controllers.append(IstioTrustAgent(settings.cluster_name, hub, spoke, key_size=settings.ca_key_size))
        else:
            controllers.append(
                OSSMFederationAgent(
                    settings.cluster_name,
                    hub,
                    spoke,
                    poll_interval=settings.poll_interval,
                    address_timeout=settings.address_timeout,
                )
            )
    return controllers


async def run_hub_async(settings: Settings) -> None:
    """Run the hub controllers until interrupted."""
    hub = K8sClient(settings.hub_kubeconfig)
    await ControllerRunner(hub_controllers(settings, hub), workers=settings.workers).run()


async def run_agent_async(settings: Settings) -> None:
    """Run the spoke agent controllers until interrupted."""
    hub = K8sClient(settings.hub_kubeconfig)
    spoke = K8sClient(settings.spoke_kubeconfig)
    await ControllerRunner(agent_controllers(settings, hub, spoke), workers=settings.workers).run()


def _output_table(meshes: list[Mesh]) -> None:
    """Output meshes as a table."""
    if not meshes:
        console.print("No meshes found")
        return

    table = Table()
    table.add_column("CLUSTER")
    table.add_column("NAME")
    table.add_column("PROVIDER")
    table.add_column("NAMESPACE")
    table.add_column("VERSION")
    table.add_column("DISCOVERED")
    table.add_column("PEERS")

    for mesh in meshes:
        summary = mesh_summary(mesh)
        table.add_row(
            summary["cluster"],
            summary["name"],
            summary["provider"],
            summary["namespace"],
            summary["version"],
            "yes" if summary["discovered"] else "no",
            str(len(summary["peers"])),
        )

    console.print(table)


def _output_json(meshes: list[Mesh]) -> None:
    """Output meshes as JSON."""
    print(json.dumps([mesh_summary(mesh) for mesh in meshes], indent=2))


def dump_manifests(manifests: list[dict[str, Any]]) -> str:
    return yaml.safe_dump_all(manifests, sort_keys=False)
