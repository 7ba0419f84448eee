"""Main entry point for running repoforge as a module.

Usage:
    python -m repoforge --help
    python -m repoforge run "add a greeting function" --repo . --docs docs
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
