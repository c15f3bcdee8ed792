"""
eventtracker_backup - Encrypted Dropbox backup and restore for the event tracker

Packages the local SQLite event store into an encrypted archive, keeps a
bounded number of copies in Dropbox, and restores the latest copy on demand.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
