"""
Entry point for running dirsync as a module.

Usage:
    python -m dirsync --help
    python -m dirsync sync --dry-run
    python -m dirsync tick
"""

from dirsync.cli import cli

if __name__ == "__main__":
    cli()
