"""resgraph command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``resgraph`` script).
"""

from resgraph.cli.main import cli

__all__ = ["cli"]
