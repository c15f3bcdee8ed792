"""
Entry point for running eventtracker_backup as a module.

Usage:
    python -m eventtracker_backup --help
    python -m eventtracker_backup link
    python -m eventtracker_backup backup
"""

from eventtracker_backup.cli import cli

if __name__ == "__main__":
    cli()
