"""Command-line interface for jobpool.

This module provides the main CLI entry point. Commands are organized
into separate modules under jobpool.cli.commands.
"""

import click

from jobpool.__version__ import __version__


@click.group()
@click.version_option(version=__version__, prog_name="jobpool")
def cli():
    """jobpool - run queued jobs in preforked worker processes."""
    pass


# These imports must come after cli is defined, hence noqa: E402
from jobpool.cli.commands.config import config  # noqa: E402
from jobpool.cli.commands.run import run  # noqa: E402

cli.add_command(run)
cli.add_command(config)

if __name__ == "__main__":
    cli()
