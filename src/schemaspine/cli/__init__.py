"""
CLI layer for schemaspine.

A Typer application whose commands delegate to
``schemaspine.core.migrations``; this package handles only terminal
transport: argument parsing, coloured output and exit codes.

Entry point::

    schemaspine --help
"""

from schemaspine.cli.app import app

__all__ = ["app"]
