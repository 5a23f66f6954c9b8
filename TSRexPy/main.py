#!/usr/bin/env python3
"""
TSRexPy: Python CLI for TSS and TSR analysis

Turns point-resolution TSS counts into transcription start regions (TSRs)
and prepares the resulting tables for downstream plotting and statistics.

Main features:
- TSS clustering into TSRs (per sample or consensus, with sample support)
- TSS-to-TSR association and dominant TSS marking
- TSR width, interquantile width and shape metrics
- Grouping, quantiling and ordering of any TSS/TSR table
- Count matrices for normalization and differential tools

Usage:
    tsrexpy <command> [options]

Commands:
    clustering   - Cluster TSSs into TSRs
    associate    - Associate TSSs with TSRs and mark dominant TSSs
    metrics      - Calculate TSR width and shape metrics
    condition    - Group, quantile and order tables
    collaborate  - Build count matrices for external tools
    init-config  - Print a default YAML config
"""

import logging
from pathlib import Path
from typing import Optional

import typer

from TSRexPy import clustering
from TSRexPy import associate
from TSRexPy import metrics
from TSRexPy import conditioning
from TSRexPy import collaborators
from TSRexPy.config import dump_config

__version__ = "0.1.0"

# Create main app
app = typer.Typer(
    name="tsrexpy",
    help=f"TSRexPy: Python CLI for TSS/TSR analysis (v{__version__})",
    add_completion=False,
)

# Register all subcommands
app.add_typer(clustering.app, name="clustering", help="Cluster TSSs into TSRs")
app.add_typer(associate.app, name="associate", help="Associate TSSs with TSRs and mark dominant TSSs")
app.add_typer(metrics.app, name="metrics", help="Calculate TSR width and shape metrics")
app.add_typer(conditioning.app, name="condition", help="Group, quantile and order tables")
app.add_typer(collaborators.app, name="collaborate", help="Build count matrices for external tools")


@app.command()
def version():
    """Show version information."""
    typer.echo(f"TSRexPy version {__version__}")
    typer.echo("A Python CLI for TSS/TSR analysis")


@app.command("init-config")
def init_config(
    output_file: Optional[Path] = typer.Option(
        None, "-o", "--output",
        help="Write the config here instead of stdout"
    ),
):
    """Print the default clustering/metrics config as YAML."""
    text = dump_config()
    if output_file:
        output_file.write_text(text)
        typer.echo(f"Config written to {output_file}")
    else:
        typer.echo(text)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """
    TSRexPy: Python CLI for TSS/TSR Analysis

    Clusters TSSs into TSRs, marks dominant TSSs, computes TSR shape
    metrics and conditions tables for downstream consumers.
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
