# src/netsynth/cli.py
"""netsynth Command Line Interface.

Entry point for the netsynth CLI tool.
"""

from pathlib import Path

import typer
from pydantic import ValidationError

from netsynth import __version__
from netsynth.contracts import SpecError
from netsynth.core.config import NetsynthSettings, load_settings
from netsynth.core.loader import SystemDescription, load_system
from netsynth.core.logging import configure_logging

app = typer.Typer(
    name="netsynth",
    help="netsynth: component network synthesis and live reconciliation.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"netsynth version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """netsynth: component network synthesis and live reconciliation."""
    pass


def _report_validation_error(title: str, e: ValidationError) -> None:
    typer.echo(f"{title}:", err=True)
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        typer.echo(f"  - {loc}: {error['msg']}", err=True)


def _load_settings(settings: str | None) -> NetsynthSettings:
    if settings is None:
        return NetsynthSettings()
    try:
        return load_settings(Path(settings))
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        _report_validation_error("Configuration errors", e)
        raise typer.Exit(1) from None


def _load_system(network: str) -> SystemDescription:
    try:
        return load_system(Path(network))
    except FileNotFoundError:
        typer.echo(f"Error: System description not found: {network}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        _report_validation_error("System description errors", e)
        raise typer.Exit(1) from None
    except SpecError as e:
        typer.echo(f"System description error: {e}", err=True)
        raise typer.Exit(1) from None


@app.command()
def instanciate(
    settings: str | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    network: str = typer.Option(
        ...,
        "--network",
        "-n",
        help="Path to the system description YAML file.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Generate and deploy the network without committing it.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show detailed output.",
    ),
) -> None:
    """Resolve the requirements of a system description."""
    config = _load_settings(settings)
    configure_logging(
        "DEBUG" if verbose else config.logging.level,
        json_output=config.logging.json_output,
    )
    system = _load_system(network)

    try:
        engine = system.create_engine(settings=config)
        if dry_run:
            generated = engine.generator().generate(system.requirements)
            if config.engine.compute_deployments:
                engine.compute_deployed_network(generated)
            graph = generated.graph
            typer.echo("Dry run mode - would instanciate:")
            typer.echo(f"  Requirements: {len(system.requirements)}")
            typer.echo(f"  Nodes: {graph.node_count}")
            typer.echo(f"  Merged: {len(generated.merge_group)}")
            if verbose:
                for node in sorted(graph.nodes(), key=lambda n: n.node_id):
                    where = f" on {node.deployed}" if node.deployed is not None else ""
                    typer.echo(f"    {node.node_id}{where}")
            return
        result = engine.resolve(system.requirements)
    except SpecError as e:
        typer.echo(f"Network error: {e}", err=True)
        raise typer.Exit(1) from None

    reconciliation = result.reconciliation
    typer.echo("Network instanciated.")
    typer.echo(f"  Nodes: {engine.plan.node_count}")
    typer.echo(f"  Processes: {', '.join(p.process_name for p in engine.plan.processes()) or '-'}")
    typer.echo(f"  Signature: {result.signature}")
    if verbose:
        typer.echo(f"  Reused: {len(reconciliation.reused)}")
        typer.echo(f"  Replaced: {len(reconciliation.replaced)}")
        for node in result.root_nodes:
            typer.echo(f"    root {node.node_id}")


@app.command()
def validate(
    network: str = typer.Option(
        ...,
        "--network",
        "-n",
        help="Path to the system description YAML file.",
    ),
) -> None:
    """Generate the network of a system description without deploying it."""
    system = _load_system(network)
    try:
        engine = system.create_engine()
        generated = engine.generator().generate(system.requirements)
    except SpecError as e:
        typer.echo(f"Network error: {e}", err=True)
        raise typer.Exit(1) from None

    graph = generated.graph
    typer.echo(f"System description valid: {Path(network).name}")
    typer.echo(f"  Requirements: {len(system.requirements)}")
    typer.echo(f"  Nodes: {graph.node_count}")
    typer.echo(f"  Connections: {sum(1 for _ in graph.each_connection())}")


if __name__ == "__main__":
    app()
