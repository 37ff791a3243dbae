"""Main entry point for running ralph as a module.

Usage:
    python -m ralph --help
    python -m ralph run --once
    python -m ralph status
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
