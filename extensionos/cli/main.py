"""CLI main entry point"""

import logging

import click

from extensionos import __version__
from extensionos.cli.extensions import extension


@click.group()
@click.version_option(version=__version__, prog_name="extensionos")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def cli(verbose: bool):
    """ExtensionOS - Plugin, theme and module lifecycle manager"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(levelname)s: %(message)s'
    )


cli.add_command(extension)


if __name__ == "__main__":
    cli()
