"""Vult — a local, PIN-protected vault for API keys and tokens."""
from .version import __version__
from .vault import VaultManager, VaultSettings

__all__ = ["__version__", "VaultManager", "VaultSettings"]
