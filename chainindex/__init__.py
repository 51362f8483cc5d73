"""Blockchain transaction and script-history indexer over an ordered key-value store."""

__version__ = "0.4.1"