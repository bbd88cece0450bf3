"""Main CLI entry point."""

import asyncio

import click
import yaml

from meshloom.cli.commands import (
    dump_manifests,
    list_meshes_async,
    run_agent_async,
    run_hub_async,
    translate_manifests,
)
from meshloom.core.errors import MeshloomError
from meshloom.utils.config import load_config
from meshloom.utils.logging import setup_logging


@click.group()
@click.version_option()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML settings file")
@click.option("--log-level", help="Override the configured log level")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """meshloom - Multicluster service mesh deployment and federation."""
    settings = load_config(config_path)
    if log_level:
        settings.log_level = log_level
    ctx.obj = settings


@cli.command("translate")
@click.option("--filename", "-f", type=click.File("r"), required=True, help="YAML file with Mesh objects ('-' for stdin)")
def translate(filename) -> None:
    """Print the physical manifests for logical meshes."""
    try:
        documents = list(yaml.safe_load_all(filename))
        click.echo(dump_manifests(translate_manifests(documents)), nl=False)
    except (MeshloomError, yaml.YAMLError) as e:
        raise click.ClickException(str(e)) from e


@cli.command("meshes")
@click.option("--cluster", help="Cluster namespace on the hub (all clusters if not specified)")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table", help="Output format")
@click.pass_obj
def meshes(settings, cluster: str | None, output: str) -> None:
    """List logical meshes registered on the hub."""
    asyncio.run(list_meshes_async(settings, cluster, output))


@cli.command("hub")
@click.pass_obj
def hub(settings) -> None:
    """Run the hub controllers."""
    setup_logging(settings.log_level, settings.log_file)
    asyncio.run(run_hub_async(settings))


@cli.command("agent")
@click.option("--cluster-name", help="Name of the spoke cluster, also its hub namespace")
@click.pass_obj
def agent(settings, cluster_name: str | None) -> None:
    """Run the agent controllers for one spoke cluster."""
    if cluster_name:
        settings.cluster_name = cluster_name
    if not settings.cluster_name:
        raise click.UsageError("--cluster-name or MESHLOOM_CLUSTER_NAME is required")
    setup_logging(settings.log_level, settings.log_file)
    asyncio.run(run_agent_async(settings))


if __name__ == "__main__":
    cli()
