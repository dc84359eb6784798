#!/usr/bin/env python3
"""
Command line interface for vsphere-builder.

Builds a VM (and optionally a template, content library item or OVF export)
on vSphere from a YAML build file.
"""

import logging
import signal
from pathlib import Path
from typing import Any, List

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from vsphere_builder.builder import Builder
from vsphere_builder.config import BuildConfig
from vsphere_builder.errors import BuildError, ConfigError, TaskCancelledError
from vsphere_builder.pipeline import BuildContext

EXIT_CANCELLED = 130

# Initialize CLI app and console
app = typer.Typer(
    name="vsphere-builder",
    help="Build VMs and templates on VMware vSphere",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


def load_config(config_file: Path) -> BuildConfig:
    """Read the build file or exit with an error message."""
    if not config_file.exists():
        console.print(f"[red]❌ Config file not found: {config_file}[/red]")
        raise typer.Exit(1)
    try:
        return BuildConfig.from_yaml(config_file)
    except ConfigError as e:
        print_config_errors(e.errors)
        raise typer.Exit(1)
    except (OSError, yaml.YAMLError) as e:
        console.print(f"[red]❌ Cannot read {config_file}: {escape(str(e))}[/red]")
        raise typer.Exit(1)


def print_config_errors(errors: List[str]) -> None:
    console.print(f"[red]❌ Configuration has {len(errors)} error(s):[/red]")
    for error in errors:
        console.print(f"  • {escape(error)}")


class InterruptHandler:
    """First Ctrl-C cancels the build and lets cleanup run; the second one aborts."""

    def __init__(self, ctx: BuildContext):
        self.ctx = ctx
        self._previous: Any = None

    def __call__(self, signum: int, frame: Any) -> None:
        if self.ctx.cancelled:
            raise KeyboardInterrupt
        if self.ctx.is_watching_publish:
            console.print("[yellow]⚠️  Interrupted while publishing to the content library; cancelling the publish task...[/yellow]")
        else:
            console.print("[yellow]⚠️  Interrupted; cancelling build and cleaning up. Press Ctrl-C again to abort.[/yellow]")
        self.ctx.cancel()

    def __enter__(self) -> "InterruptHandler":
        self._previous = signal.signal(signal.SIGINT, self)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        signal.signal(signal.SIGINT, self._previous)


def print_artifact(artifact: Any) -> None:
    table = Table(title=f"Artifact: {artifact.name}")
    table.add_column("Label", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("datacenter", artifact.datacenter)
    for key, value in sorted(artifact.labels.items()):
        table.add_row(key, escape(str(value)))
    for path in artifact.files:
        table.add_row("file", path)
    console.print(table)


@app.command("build")
def build(
    config_file: Path = typer.Argument(..., help="YAML build file"),
    force: bool = typer.Option(
        False,
        "--force", "-f",
        help="Replace an existing VM with the same name"
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug logging"
    )
) -> None:
    """Run a build and print the resulting artifact."""
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = load_config(config_file)
    if force:
        config.force = True
    try:
        config.validate()
    except ConfigError as e:
        print_config_errors(e.errors)
        raise typer.Exit(1)

    console.print(f"🔨 Building {config.name} from {config.source}...")
    ctx = BuildContext()
    try:
        with InterruptHandler(ctx):
            artifact = Builder(config).run(ctx)
    except TaskCancelledError:
        console.print("[yellow]⚠️  Build cancelled[/yellow]")
        raise typer.Exit(EXIT_CANCELLED)
    except KeyboardInterrupt:
        console.print("[red]❌ Build aborted[/red]")
        raise typer.Exit(EXIT_CANCELLED)
    except BuildError as e:
        console.print(f"[red]❌ Build failed: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    if artifact is None:
        console.print("✅ Build finished; no VM was kept")
        return
    print_artifact(artifact)
    console.print(f"✅ Build finished: {artifact.name}")


@app.command("validate")
def validate(
    config_file: Path = typer.Argument(..., help="YAML build file")
) -> None:
    """Check a build file without connecting to vCenter."""
    config = load_config(config_file)
    errors = config.prepare()
    if errors:
        print_config_errors(errors)
        raise typer.Exit(1)
    console.print(f"✅ {config_file} is valid")


@app.command("inspect")
def inspect(
    config_file: Path = typer.Argument(..., help="YAML build file")
) -> None:
    """Show the steps a build would run."""
    config = load_config(config_file)
    errors = config.prepare()
    if errors:
        print_config_errors(errors)
        raise typer.Exit(1)

    table = Table(title=f"Steps for {config.name} ({config.source})")
    table.add_column("#", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Class", style="green")
    for i, step in enumerate(Builder(config).steps(), start=1):
        table.add_row(str(i), step.name, type(step).__name__)
    console.print(table)


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
