"""
Vigil CLI Package.

This module exports the CLI entry points for Vigil.
"""

from vigil.cli.main import app

__all__ = [
    "app",
]
