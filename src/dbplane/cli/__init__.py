"""
CLI layer for dbplane.

A Typer application whose commands delegate to the operations layer
(``dbplane.ops``).  This package handles terminal transport only:
argument parsing, coloured output and table formatting.

Entry point::

    dbplane --help
"""

from dbplane.cli.app import app

__all__ = ["app"]
