"""
CLI layer for release-spine.

Provides the Typer application the release launcher calls.  All sequencing
lives in :mod:`release_spine.controller`; this package only handles
terminal transport: option parsing, settings, and the exit status.

Entry point::

    release-spine --help
"""

from release_spine.cli.app import app

__all__ = ["app"]
