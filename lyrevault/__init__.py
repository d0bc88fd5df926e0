"""LyreVault: portable backup and import engine for local-first project workspaces."""

__version__ = "0.1.0"
