"""Offline-first synchronization core for the SGI ERP."""

__version__ = "0.1.0"
