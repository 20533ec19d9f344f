"""Burn watcher - chain-tail ingestion and reactive burn engine."""

__version__ = "0.1.0"
