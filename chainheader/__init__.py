"""Verification, storage and synchronization of chained block headers."""

__version__ = "0.1.0"