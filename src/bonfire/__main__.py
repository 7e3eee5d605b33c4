"""CLI entrypoint for running bonfire as a module."""

from bonfire.cli import cli
from bonfire.logging import setup_logging

if __name__ == "__main__":
    setup_logging()
    cli()
